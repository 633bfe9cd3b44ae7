"""Cooperative time budgets and the consecutive-timeout circuit breaker."""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from .errors import TimeoutFailure
from .models import ProcessingOutcome, SkippedTimeout

logger = logging.getLogger(__name__)


class TimeBudgetGuard:
    """A fixed budget measured from creation, optionally nested inside a parent budget.

    Checking a guard checks its whole parent chain, so the innermost guard is
    the only deadline object a blocking call needs.
    """

    def __init__(
        self,
        budget: float,
        scope: str,
        parent: Optional["TimeBudgetGuard"] = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.budget = budget
        self.scope = scope
        self.parent = parent
        self._clock = clock or (parent._clock if parent else time.monotonic)
        self.started = self._clock()

    def child(self, budget: float, scope: str) -> "TimeBudgetGuard":
        return TimeBudgetGuard(budget, scope, parent=self)

    def elapsed(self) -> float:
        return self._clock() - self.started

    def remaining(self) -> float:
        own = max(0.0, self.budget - self.elapsed())
        if self.parent is None:
            return own
        return min(own, self.parent.remaining())

    def expired(self) -> bool:
        return self._expired_scope() is not None

    def _expired_scope(self) -> Optional["TimeBudgetGuard"]:
        # Outermost first, so the reported scope is the widest one that ran out.
        if self.parent is not None:
            expired = self.parent._expired_scope()
            if expired is not None:
                return expired
        if self.elapsed() > self.budget:
            return self
        return None

    def check_or_fail(self, phase: str = "") -> None:
        expired = self._expired_scope()
        if expired is not None:
            raise TimeoutFailure(expired.scope, expired.elapsed(), expired.budget, phase)


class CircuitBreaker:
    """Opens after ``threshold`` consecutive timeout outcomes."""

    def __init__(self, threshold: int = 2) -> None:
        self.threshold = threshold
        self.consecutive_timeouts = 0

    def record(self, outcome: ProcessingOutcome) -> None:
        if isinstance(outcome, SkippedTimeout):
            self.consecutive_timeouts += 1
            if self.is_open:
                logger.warning(
                    "Circuit breaker open after %s consecutive timeouts", self.consecutive_timeouts
                )
        else:
            self.consecutive_timeouts = 0

    @property
    def is_open(self) -> bool:
        return self.consecutive_timeouts >= self.threshold
