"""Sliding-window admission control for AI endpoint calls."""

from __future__ import annotations

import logging
import time
from collections import deque
from typing import Callable

logger = logging.getLogger(__name__)


class RateLimiter:
    """Admit at most ``max_calls_per_minute`` calls in any trailing 60 second window.

    The limiter never hard-blocks the pipeline: ``await_admission`` gives up
    after ``max_wait`` seconds and lets the caller proceed.
    """

    WINDOW_SECONDS = 60.0
    BUFFER_SECONDS = 1.0
    MAX_SLEEP_SECONDS = 30.0

    def __init__(
        self,
        max_calls_per_minute: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_calls_per_minute < 1:
            raise ValueError("max_calls_per_minute must be at least 1")
        self.max_calls = max_calls_per_minute
        self._clock = clock
        self._sleep = sleep
        self._calls: deque[float] = deque(maxlen=max_calls_per_minute)

    def _prune(self, now: float) -> None:
        cutoff = now - self.WINDOW_SECONDS
        while self._calls and self._calls[0] <= cutoff:
            self._calls.popleft()

    def calls_in_window(self) -> int:
        self._prune(self._clock())
        return len(self._calls)

    def can_admit(self) -> bool:
        return self.calls_in_window() < self.max_calls

    def record_call(self) -> None:
        now = self._clock()
        self._prune(now)
        self._calls.append(now)

    def await_admission(self, max_wait: float) -> None:
        """Sleep until a call can be admitted or ``max_wait`` seconds have passed."""
        started = self._clock()
        while not self.can_admit():
            waited = self._clock() - started
            if waited > max_wait:
                logger.warning(
                    "Rate limiter waited %.1fs (max %.1fs); proceeding anyway", waited, max_wait
                )
                return
            if not self._calls:
                logger.warning("Rate limiter window is empty but admission was denied; proceeding")
                return

            now = self._clock()
            oldest_age = now - self._calls[0]
            wait = max(0.0, self.WINDOW_SECONDS - oldest_age + self.BUFFER_SECONDS)
            wait = min(wait, max_wait - waited, self.MAX_SLEEP_SECONDS)
            if wait <= 0:
                logger.warning(
                    "Rate limiter computed no usable wait (oldest call %.1fs old); proceeding",
                    oldest_age,
                )
                return
            logger.debug(
                "Rate limit reached (%s calls in window); sleeping %.1fs",
                len(self._calls),
                wait,
            )
            self._sleep(wait)
