from __future__ import annotations

from datetime import UTC, date, datetime

import pytest
from pydantic import ValidationError


def test_defaults(settings):
    assert settings.max_retries == 2
    assert settings.rate_limit_calls_per_minute == 60
    assert settings.batch_size == 20
    assert settings.max_threads_per_run == 100
    assert settings.max_execution_seconds == 330
    assert settings.extraction_seconds == 50
    assert settings.issuer_aliases == ["ipronics", "intelectium"]
    assert "factura" in settings.search_keywords
    assert settings.graph_scopes == ["Mail.ReadWrite", "Files.ReadWrite"]


def test_regional_and_global_endpoints(make_settings):
    assert make_settings().vertex_endpoint.startswith("https://aiplatform.googleapis.com/v1/")
    regional = make_settings(VERTEX_AI_LOCATION="europe-west1").vertex_endpoint
    assert regional.startswith("https://europe-west1-aiplatform.googleapis.com/v1/projects/invoices-project/")


def test_search_range_is_inclusive_of_the_end_day(make_settings):
    settings = make_settings(SEARCH_START_DATE="2024-01-01", SEARCH_END_DATE="2024-03-31")

    window = settings.search_range()

    assert window.start == datetime(2024, 1, 1, tzinfo=UTC)
    assert window.contains(datetime(2024, 3, 31, 23, 59, tzinfo=UTC))
    assert not window.contains(datetime(2024, 4, 1, 0, 0, tzinfo=UTC))


def test_search_range_defaults_to_today(settings):
    window = settings.search_range(today=date(2024, 6, 15))

    assert window.start is None
    assert window.end.date() == date(2024, 6, 15)


def test_non_invoice_patterns_keep_commas(make_settings):
    settings = make_settings(NON_INVOICE_SUBJECT_PATTERNS=r"\bpedido (enviado|listo)\b;envío,\s*seguimiento")

    assert settings.non_invoice_patterns == [r"\bpedido (enviado|listo)\b", r"envío,\s*seguimiento"]


def test_empty_optional_values_become_none(make_settings):
    settings = make_settings(PRIORITY_CATEGORY="", SEARCH_START_DATE="")

    assert settings.priority_category is None
    assert settings.search_start_date is None


@pytest.mark.parametrize(
    "overrides",
    [
        {"MAX_AI_CALL_SECONDS": 60, "MAX_MESSAGE_SECONDS": 60},
        {"EXTRACTION_RESERVE_SECONDS": 70},
        {"MAX_MESSAGE_SECONDS": 400},
        {"PAPERLESS_BASE_URL": "http://paperless.local"},
        {"GRAPH_AUTH_MODE": "client_credentials"},
    ],
)
def test_inconsistent_settings_are_rejected(make_settings, overrides):
    with pytest.raises(ValidationError):
        make_settings(**overrides)


def test_describe_hides_secrets(make_settings):
    described = make_settings(VERTEX_ACCESS_TOKEN="ya29.secret").describe()

    assert "ya29.secret" not in str(described)
    assert described["vertex_model"] == "gemini-3-flash-preview"
