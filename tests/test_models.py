from __future__ import annotations

from datetime import date

import pytest

from invoice_agent.errors import TimeoutFailure
from invoice_agent.models import (
    Created,
    Failed,
    InvoiceRecord,
    RunState,
    SkippedDuplicate,
    SkippedNotInvoice,
    SkippedTimeout,
)
from invoice_agent.utils import html_to_text, invoice_filename, parse_invoice_date, sanitize_filename


def test_record_from_english_payload():
    record = InvoiceRecord.from_payload(
        {
            "isInvoice": True,
            "provider": " Acme Hosting SL ",
            "invoiceDate": "2024-03-31",
            "invoiceNumber": 31,
            "concept": "Hosting",
            "amountExVat": 100.0,
            "vatAmount": 21,
            "totalAmount": "121",
        }
    )

    assert record.provider == "Acme Hosting SL"
    assert record.invoice_number == "31"
    assert record.invoice_date == date(2024, 3, 31)
    assert record.amounts() == (100.0, 21, None)


def test_record_from_spanish_payload():
    record = InvoiceRecord.from_payload(
        {"esFactura": False, "razon": "es publicidad", "proveedor": "Tienda"}
    )

    assert record.is_invoice is False
    assert record.rejection_reason == "es publicidad"
    assert record.provider == "Tienda"


@pytest.mark.parametrize("flag, expected", [(None, True), ("false", False), ("yes", True), (0, True)])
def test_only_explicit_negatives_mark_not_invoice(flag, expected):
    payload = {} if flag is None else {"isInvoice": flag}
    assert InvoiceRecord.from_payload(payload).is_invoice is expected


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("2024-03-31", date(2024, 3, 31)),
        ("2024-03-31T10:00:00", date(2024, 3, 31)),
        ("31/03/2024", None),
        ("1999-12-31", None),
        ("", None),
        (None, None),
    ],
)
def test_parse_invoice_date(raw, expected):
    assert parse_invoice_date(raw) == expected


def test_invoice_filename():
    assert invoice_filename("Acme: Hosting/SL", "F 2024*1", date(2024, 3, 31)) == (
        "Acme__Hosting_SL_F_2024_1_2024-03-31.pdf"
    )
    assert invoice_filename("", "", None) == "Unknown_N_A_Unknown.pdf"


def test_sanitize_filename_caps_length():
    assert len(sanitize_filename("x" * 80)) == 50


def test_html_to_text_skips_scripts():
    html = "<html><head><style>p{color:red}</style></head><body><p>Total</p><script>x()</script> 10 EUR</body></html>"
    assert html_to_text(html) == "Total 10 EUR"


def test_run_state_counts_outcomes():
    state = RunState()
    for outcome in (
        Created(InvoiceRecord(provider="A", invoice_number="1"), None),
        SkippedNotInvoice("promo"),
        SkippedDuplicate(),
        SkippedTimeout(TimeoutFailure("ai_call", 26, 25)),
        Failed(RuntimeError("boom")),
    ):
        state.record(outcome)

    summary = state.summary(remaining=3, circuit_open=False, continuation_scheduled=False)

    assert (summary.processed, summary.created, summary.skipped, summary.errors, summary.timeouts) == (5, 1, 3, 1, 1)
    assert summary.run_id == state.run_id
    assert summary.remaining == 3
