"""Failure taxonomy for the extraction pipeline."""

from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    """Discriminant carried by every pipeline failure."""

    TIMEOUT = "timeout"
    RETRIABLE = "retriable"
    FATAL = "fatal"
    PARSE = "parse"


class PipelineFailure(Exception):
    """Base class for failures raised while processing a message."""

    kind: FailureKind = FailureKind.FATAL


class TimeoutFailure(PipelineFailure):
    """A time budget (run, message, extraction or single call) ran out."""

    kind = FailureKind.TIMEOUT

    def __init__(self, scope: str, elapsed: float, budget: float, phase: str = "") -> None:
        self.scope = scope
        self.elapsed = elapsed
        self.budget = budget
        self.phase = phase
        where = f" at {phase}" if phase else ""
        super().__init__(
            f"{scope} budget exceeded{where}: {elapsed:.2f}s elapsed (max {budget:.2f}s)"
        )


class RetriableAPIFailure(PipelineFailure):
    """HTTP 429/500/503 or a transient network error."""

    kind = FailureKind.RETRIABLE

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class FatalAPIFailure(PipelineFailure):
    """Any other non-200 answer or an unrecognised transport error."""

    kind = FailureKind.FATAL

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ParseFailure(PipelineFailure):
    """The model answered, but no JSON object could be read from it."""

    kind = FailureKind.PARSE

    def __init__(
        self,
        direct_error: Exception | str,
        span_error: Exception | str | None = None,
        sample: str = "",
    ) -> None:
        self.direct_error = direct_error
        self.span_error = span_error
        self.sample = sample
        detail = f"direct decode failed: {direct_error}"
        if span_error is not None:
            detail += f"; extracted span failed: {span_error}"
        super().__init__(f"Could not parse model output ({detail}); sample={sample!r}")
