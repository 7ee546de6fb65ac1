from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from bulkline.errors import RecordLevelFailure
from bulkline.models import MutationKind


def widget_rows(count: int, start: int = 1) -> list[dict[str, Any]]:
    return [
        {
            "id": i,
            "name": f"widget-{i}",
            "status": "active",
            "score": i % 10,
            "created_at": datetime(2025, 6, 1, 8, 30) + timedelta(minutes=i),
            "deleted_at": None,
            "archived_at": None,
            "archive_reason": None,
        }
        for i in range(start, start + count)
    ]


class FakeClock:
    """One controllable clock for datetimes, epoch seconds and the monotonic timer."""

    def __init__(self, start: datetime = datetime(2026, 3, 2, 9, 0, 0)) -> None:
        self.now = start

    def utcnow(self) -> datetime:
        return self.now

    def time(self) -> float:
        return self.now.replace(tzinfo=timezone.utc).timestamp()

    monotonic = time

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


class FlakyAction:
    """
    Sets `status` to "touched"; raises for ids in `fail_ids`, and raises
    `error` for the first `transient_failures` calls on `transient_id`.
    """

    label = "Flaky"

    def __init__(
        self,
        fail_ids=(),
        *,
        transient_id: Any = None,
        transient_failures: int = 0,
        error: Optional[Exception] = None,
        on_execute: Optional[Callable[[Any], None]] = None,
    ) -> None:
        self.fail_ids = set(fail_ids)
        self.transient_id = transient_id
        self.transient_failures = transient_failures
        self.error = error
        self.on_execute = on_execute
        self.calls: list[Any] = []

    def execute(self, store, record, params) -> bool:
        record_id = record["id"]
        self.calls.append(record_id)
        if self.on_execute is not None:
            self.on_execute(record_id)
        if record_id == self.transient_id and self.transient_failures > 0:
            self.transient_failures -= 1
            raise self.error
        if record_id in self.fail_ids:
            raise RecordLevelFailure(f"cannot touch {record_id}")
        store.update(record_id, {"status": "touched"})
        return True

    def declare_undo_fields(self, store, params):
        return ["status"]

    def undo_operation_type(self, store, params) -> MutationKind:
        return MutationKind.UPDATE
