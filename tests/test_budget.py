from __future__ import annotations

import pytest

from conftest import FakeClock
from invoice_agent.budget import CircuitBreaker, TimeBudgetGuard
from invoice_agent.errors import FailureKind, TimeoutFailure
from invoice_agent.models import Created, Failed, InvoiceRecord, SkippedNotInvoice, SkippedTimeout


def test_guard_expires_after_budget():
    clock = FakeClock()
    guard = TimeBudgetGuard(10, "message", clock=clock)

    clock.advance(10)
    guard.check_or_fail()
    clock.advance(0.1)

    with pytest.raises(TimeoutFailure) as excinfo:
        guard.check_or_fail("upload")
    assert excinfo.value.kind is FailureKind.TIMEOUT
    assert excinfo.value.phase == "upload"
    assert "message budget exceeded at upload" in str(excinfo.value)


def test_child_reports_the_outermost_expired_scope():
    clock = FakeClock()
    run = TimeBudgetGuard(100, "run", clock=clock)
    clock.advance(95)
    message = run.child(60, "message")
    call = message.child(25, "ai_call")

    assert call.remaining() == pytest.approx(5)
    clock.advance(6)

    with pytest.raises(TimeoutFailure) as excinfo:
        call.check_or_fail()
    assert excinfo.value.scope == "run"


def test_child_budget_is_fixed_at_creation():
    clock = FakeClock()
    message = TimeBudgetGuard(60, "message", clock=clock)
    clock.advance(20)
    call = message.child(25, "ai_call")
    clock.advance(26)

    assert call.expired()
    with pytest.raises(TimeoutFailure) as excinfo:
        call.check_or_fail()
    assert excinfo.value.scope == "ai_call"
    assert not message.expired()


def test_breaker_opens_after_consecutive_timeouts():
    breaker = CircuitBreaker(threshold=2)
    timeout = SkippedTimeout(TimeoutFailure("ai_call", 26, 25))

    breaker.record(timeout)
    assert not breaker.is_open
    breaker.record(timeout)
    assert breaker.is_open


@pytest.mark.parametrize(
    "reset",
    [
        Created(InvoiceRecord(provider="Acme", invoice_number="1"), None),
        SkippedNotInvoice("newsletter"),
        Failed(RuntimeError("boom")),
    ],
)
def test_breaker_resets_on_any_other_outcome(reset):
    breaker = CircuitBreaker(threshold=2)
    timeout = SkippedTimeout(TimeoutFailure("ai_call", 26, 25))

    breaker.record(timeout)
    breaker.record(reset)
    breaker.record(timeout)

    assert not breaker.is_open
    assert breaker.consecutive_timeouts == 1
