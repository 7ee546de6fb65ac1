from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Mapping, Protocol

logger = logging.getLogger(__name__)

EXECUTION_SCHEDULED = "execution.scheduled"
EXECUTION_STARTED = "execution.started"
EXECUTION_PROGRESS = "execution.progress"
EXECUTION_COMPLETED = "execution.completed"
EXECUTION_FAILED = "execution.failed"
EXECUTION_CANCELLED = "execution.cancelled"
EXECUTION_UNDONE = "execution.undone"


class EventSink(Protocol):
    def emit(self, name: str, payload: Mapping[str, Any]) -> None:
        ...


class LoggingEventSink:
    """Default sink: lifecycle events become INFO log lines."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self.log = log or logger

    def emit(self, name: str, payload: Mapping[str, Any]) -> None:
        self.log.info("event %s %s", name, dict(payload))


class CallbackEventSink:
    """Forwards events to ``callback(name, payload)``."""

    def __init__(self, callback: Callable[[str, dict], None]) -> None:
        self.callback = callback

    def emit(self, name: str, payload: Mapping[str, Any]) -> None:
        self.callback(name, dict(payload))


class RecordingEventSink:
    """Keeps every event in memory; handy for inspection and tests."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    def emit(self, name: str, payload: Mapping[str, Any]) -> None:
        self.events.append((name, dict(payload)))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


def emit_safely(sink: EventSink, name: str, payload: Mapping[str, Any]) -> None:
    """Fire-and-forget: a broken sink is logged, never raised into the engine."""
    try:
        sink.emit(name, payload)
    except Exception:
        logger.exception("event sink failed for %s", name)
