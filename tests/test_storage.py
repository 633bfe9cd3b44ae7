from __future__ import annotations

from datetime import UTC, date, datetime

from invoice_agent.ledger import Ledger
from invoice_agent.models import InvoiceRecord
from invoice_agent.state_store import StateStore


def test_ledger_appends_and_returns_newest_first(ledger):
    for number in ("A-1", "A-2", "A-3"):
        ledger.append_row(
            InvoiceRecord(provider="Acme", invoice_number=number, invoice_date=date(2024, 1, 31), total_amount=10.0),
            f"https://drive.test/{number}.pdf",
            message_id=f"msg-{number}",
        )

    recent = ledger.find_recent(2)

    assert [row["invoice_number"] for row in recent] == ["A-3", "A-2"]
    assert recent[0]["invoice_date"] == "2024-01-31"
    assert recent[0]["message_id"] == "msg-A-3"
    assert ledger.count() == 3


def test_ledger_keeps_unknown_amounts_empty(ledger):
    ledger.append_row(InvoiceRecord(provider="Acme", invoice_number="B-1"), "")

    row = ledger.find_recent(1)[0]

    assert row["total_amount"] is None
    assert row["invoice_date"] == ""


def test_ledger_schema_survives_reopen(tmp_path):
    path = tmp_path / "nested" / "ledger.db"
    Ledger(path).append_row(InvoiceRecord(provider="Acme", invoice_number="C-1"), "")

    assert Ledger(path).count() == 1


def test_state_values_round_trip_as_json(state):
    state.set("settings", {"batch": 20, "labels": ["Facturas"]})

    assert state.get("settings") == {"batch": 20, "labels": ["Facturas"]}
    assert state.get("missing", "fallback") == "fallback"


def test_processed_ids_are_capped_oldest_first(tmp_path):
    store = StateStore(tmp_path / "state.db", processed_cap=3)

    for message_id in ("a", "b", "c", "d"):
        store.mark_processed(message_id)
    store.mark_processed("c")

    assert store.processed_ids() == ["b", "c", "d"]
    assert not store.is_processed("a")


def test_clear_processed(state):
    state.mark_processed("a")
    state.mark_processed("b")

    assert state.clear_processed() == 2
    assert state.processed_ids() == []


def test_last_run_and_continuation_timestamps(state):
    moment = datetime(2024, 6, 1, 8, 0, tzinfo=UTC)

    state.set_last_run_time(moment)
    state.set_continuation_due_at(moment)
    assert state.last_run_time() == moment
    assert state.continuation_due_at() == moment

    state.set_continuation_due_at(None)
    assert state.continuation_due_at() is None
