"""Run loop: collect candidates, pick a balanced subset, process it in batches within the run budget."""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import defaultdict
from datetime import UTC, datetime, timedelta
from typing import Callable, Iterable, Optional, Protocol

from .budget import CircuitBreaker, TimeBudgetGuard
from .config import Settings
from .errors import TimeoutFailure
from .models import CandidateMessage, Failed, ProcessingOutcome, RunState, RunSummary, SkippedTimeout
from .pipeline import MessagePipeline, MessageSource
from .utils import chunked, year_month

logger = logging.getLogger(__name__)


class RunBookkeeping(Protocol):
    def processed_ids(self) -> list[str]: ...

    def set_last_run_time(self, moment: datetime) -> None: ...


class ContinuationTrigger(Protocol):
    def schedule(self, delay_seconds: float) -> None: ...


class ContinuationStateStore(Protocol):
    def set_continuation_due_at(self, moment: Optional[datetime]) -> None: ...


class TimerContinuation:
    """One-shot, in-process continuation that calls ``callback`` after a delay."""

    def __init__(
        self, callback: Callable[[], object], state: Optional[ContinuationStateStore] = None
    ) -> None:
        self.callback = callback
        self.state = state
        self.timer: Optional[threading.Timer] = None

    def schedule(self, delay_seconds: float) -> None:
        if self.timer is not None and self.timer.is_alive():
            logger.info("Continuation already pending; not scheduling another")
            return
        if self.state is not None:
            self.state.set_continuation_due_at(datetime.now(tz=UTC) + timedelta(seconds=delay_seconds))
        self.timer = threading.Timer(delay_seconds, self._fire)
        self.timer.start()
        logger.info("Continuation scheduled in %.0fs", delay_seconds)

    def cancel(self) -> None:
        if self.timer is not None:
            self.timer.cancel()

    def _fire(self) -> None:
        if self.state is not None:
            self.state.set_continuation_due_at(None)
        self.callback()


def balanced_selection(messages: Iterable[CandidateMessage], limit: int) -> list[CandidateMessage]:
    """Pick up to ``limit`` messages spread across calendar months, oldest first within each month.

    Every month gets up to ``ceil(limit / months)``; capacity left over by
    sparse months is then filled round-robin from the denser ones.
    """
    ordered = sorted(messages, key=lambda message: message.received)
    if len(ordered) <= limit:
        return ordered

    by_month: dict[str, list[CandidateMessage]] = defaultdict(list)
    for message in ordered:
        by_month[year_month(message.received.date())].append(message)
    months = sorted(by_month)
    quota = math.ceil(limit / len(months))

    selected: list[CandidateMessage] = []
    for month in months:
        take = min(quota, limit - len(selected))
        selected.extend(by_month[month][:take])
        by_month[month] = by_month[month][take:]

    while len(selected) < limit:
        progressed = False
        for month in months:
            if len(selected) >= limit:
                break
            if by_month[month]:
                selected.append(by_month[month].pop(0))
                progressed = True
        if not progressed:
            break

    logger.info(
        "Selected %s of %s candidates across %s months (quota %s per month)",
        len(selected),
        len(ordered),
        len(months),
        quota,
    )
    return selected


class RunScheduler:
    """One run: fetch, select, process in batches, summarise, maybe schedule a continuation."""

    def __init__(
        self,
        settings: Settings,
        source: MessageSource,
        pipeline: MessagePipeline,
        bookkeeping: RunBookkeeping,
        continuation: Optional[ContinuationTrigger] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.source = source
        self.pipeline = pipeline
        self.bookkeeping = bookkeeping
        self.continuation = continuation
        self._clock = clock
        self._sleep = sleep

    def collect_candidates(self) -> list[CandidateMessage]:
        """Run both search strategies, merge by message id and drop processed messages."""
        date_range = self.settings.search_range()
        found: dict[str, CandidateMessage] = {}
        if self.settings.priority_category:
            for message in self.source.search([], self.settings.priority_category, date_range):
                found.setdefault(message.message_id, message)
            logger.info("Category %r yielded %s messages", self.settings.priority_category, len(found))
        for message in self.source.search(self.settings.search_keywords, None, date_range):
            found.setdefault(message.message_id, message)

        processed = set(self.bookkeeping.processed_ids())
        candidates = [message for message in found.values() if message.message_id not in processed]
        logger.info(
            "Found %s unique messages, %s not processed yet", len(found), len(candidates)
        )
        return candidates

    def run(self) -> RunSummary:
        state = RunState()
        run_guard = TimeBudgetGuard(self.settings.max_execution_seconds, "run", clock=self._clock)
        breaker = CircuitBreaker(self.settings.circuit_breaker_threshold)
        logger.info(
            "Run %s started (budget %.0fs, max %s messages)",
            state.run_id,
            self.settings.max_execution_seconds,
            self.settings.max_threads_per_run,
        )

        remaining = 0
        completed = False
        scheduled = False
        try:
            candidates = self.collect_candidates()
            remaining = len(candidates)
            selected = balanced_selection(candidates, self.settings.max_threads_per_run)
            batches = list(chunked(selected, self.settings.batch_size))

            for number, batch in enumerate(batches, start=1):
                if self._should_stop(run_guard, breaker):
                    break
                logger.info(
                    "Processing batch %s/%s (%s messages, %.0fs elapsed)",
                    number,
                    len(batches),
                    len(batch),
                    run_guard.elapsed(),
                )
                for message in batch:
                    if self._should_stop(run_guard, breaker):
                        break
                    outcome = self.process_one(message, run_guard)
                    state.record(outcome)
                    breaker.record(outcome)
                    state.consecutive_timeout_count = breaker.consecutive_timeouts
                    remaining -= 1
                if number < len(batches) and not self._should_stop(run_guard, breaker):
                    self._sleep(self.settings.batch_pause_seconds)

            self.bookkeeping.set_last_run_time(datetime.now(tz=UTC))
            completed = True
        finally:
            state.elapsed_seconds = run_guard.elapsed()
            if run_guard.expired() and not breaker.is_open and (remaining > 0 or not completed):
                scheduled = self._schedule_continuation()

        summary = state.summary(
            remaining=remaining, circuit_open=breaker.is_open, continuation_scheduled=scheduled
        )
        logger.info(
            "Run %s complete: processed=%s created=%s skipped=%s errors=%s timeouts=%s remaining=%s elapsed=%.1fs",
            summary.run_id,
            summary.processed,
            summary.created,
            summary.skipped,
            summary.errors,
            summary.timeouts,
            summary.remaining,
            summary.elapsed_seconds,
        )
        return summary

    def process_one(self, message: CandidateMessage, run_guard: TimeBudgetGuard) -> ProcessingOutcome:
        """Run the pipeline for one message and turn any failure into an outcome."""
        try:
            outcome = self.pipeline.process(message, run_guard)
        except TimeoutFailure as exc:
            logger.warning("Message %s timed out: %s", message.message_id, exc)
            return SkippedTimeout(exc)
        except Exception as exc:
            logger.exception("Failed to process message %s", message.message_id)
            return Failed(exc)
        logger.info("Message %s -> %s", message.message_id, type(outcome).__name__)
        return outcome

    def _should_stop(self, run_guard: TimeBudgetGuard, breaker: CircuitBreaker) -> bool:
        if breaker.is_open:
            logger.warning("Circuit breaker open; stopping the run early")
            return True
        if run_guard.expired():
            logger.warning("Run budget of %.0fs exhausted", run_guard.budget)
            return True
        return False

    def _schedule_continuation(self) -> bool:
        if self.continuation is None:
            logger.warning("Run budget exhausted with work left but no continuation trigger is set")
            return False
        try:
            self.continuation.schedule(self.settings.continuation_delay_seconds)
        except Exception:
            logger.exception("Could not schedule a continuation run")
            return False
        return True
