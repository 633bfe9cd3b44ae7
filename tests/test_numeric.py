from __future__ import annotations

import pytest

from invoice_agent.numeric import normalize_amount, normalize_amounts


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("824,68", 824.68),
        ("163,38", 163.38),
        ("778", 778.0),
        ("1.234,56", 1234.56),
        ("1,234.56", 1234.56),
        ("1.234,56 €", 1234.56),
        ("EUR 99,90", 99.9),
        ("$ 1,000.00", 1000.0),
        ("0", 0.0),
        (12, 12.0),
        (12.5, 12.5),
    ],
)
def test_normalize_amount(raw, expected):
    assert normalize_amount(raw) == pytest.approx(expected)


@pytest.mark.parametrize("raw", [None, "", "n/a", "€", True, float("nan"), "inf", [1, 2]])
def test_unreadable_amounts_become_none(raw):
    assert normalize_amount(raw) is None


def test_zero_is_not_confused_with_missing():
    assert normalize_amount("0,00") == 0.0
    assert normalize_amount("0,00") is not None


def test_normalize_amounts_touches_only_monetary_fields():
    payload = {
        "invoiceNumber": "10983",
        "amountExVat": "778",
        "vatAmount": "163,38",
        "totalAmount": 824.68,
        "importeTotal": "1.000,00",
    }

    normalized = normalize_amounts(payload)

    assert normalized == {
        "invoiceNumber": "10983",
        "amountExVat": 778.0,
        "vatAmount": 163.38,
        "totalAmount": 824.68,
        "importeTotal": 1000.0,
    }
    assert payload["vatAmount"] == "163,38"
