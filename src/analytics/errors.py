"""
Exception hierarchy for the analytics engine.

None of these ever reach query callers: the dispatcher catches them at the
per-user boundary, and parsing turns shape problems into missing samples.
"""

from __future__ import annotations


class AnalyticsError(Exception):
    """Base class for analytics engine errors."""


class TransientProcessingError(AnalyticsError):
    """A stage of one user's pipeline failed."""

    def __init__(self, user_id: str, stage: str, cause: BaseException | None = None):
        self.user_id = user_id
        self.stage = stage
        self.cause = cause
        message = f"{stage} failed for user {user_id}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class DataShapeError(AnalyticsError):
    """A metric field is missing or malformed."""

    def __init__(self, field_name: str, value: object):
        self.field_name = field_name
        self.value = value
        super().__init__(f"Malformed value for {field_name}: {value!r}")


class PersistenceError(AnalyticsError):
    """A durable-store write failed."""


class PipelineTimeoutError(AnalyticsError):
    """A user pipeline exceeded its time budget."""

    def __init__(self, user_id: str, timeout_seconds: float):
        self.user_id = user_id
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Pipeline for user {user_id} exceeded {timeout_seconds:.1f}s")
