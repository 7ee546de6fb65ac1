from __future__ import annotations

from enum import Enum
from typing import Optional


class BulklineError(Exception):
    """Base exception for bulkline errors."""


class DbWriteError(BulklineError):
    """Any failure during DB write."""


class QueueError(BulklineError):
    """General queue-related issues."""


class SpecInvalid(BulklineError):
    """The submitted target/action spec cannot be executed. No state was created."""


class Unauthorized(BulklineError):
    """The authorization decision for (actor, action, entity type) was negative."""


class RateLimited(BulklineError):
    """
    The rate/concurrency gate rejected a submission.

    ``reason`` is one of ``concurrency``, ``cooldown`` or ``too_many_records``.
    ``retry_after`` is a hint in seconds when known.
    """

    def __init__(self, message: str, *, reason: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.reason = reason
        self.retry_after = retry_after


class RecordLevelFailure(BulklineError):
    """A single handler invocation failed. Isolated and counted by the worker."""


class BatchLevelFailure(BulklineError):
    """Transient batch failure (lock contention, timeout). Retried with backoff."""


class BatchTimeout(BatchLevelFailure):
    """A batch ran longer than its configured maximum duration."""


class UndoReason(str, Enum):
    EXPIRED = "expired"
    ALREADY_UNDONE = "already_undone"
    NEVER_ENABLED = "never_enabled"
    NOT_COMPLETED = "not_completed"
    NOTHING_TO_UNDO = "nothing_to_undo"


class UndoUnavailable(BulklineError):
    """Undo was requested for an execution that is not eligible."""

    def __init__(self, reason: UndoReason, message: Optional[str] = None) -> None:
        super().__init__(message or f"Undo unavailable: {reason.value}")
        self.reason = reason


class SchedulingConflict(BulklineError):
    """Cancel/reschedule attempted on an execution that is not scheduled."""


class InvalidTransition(BulklineError):
    """A status transition was requested from a state that does not allow it."""


class ExecutionNotFound(BulklineError):
    """No execution exists with the given id."""
