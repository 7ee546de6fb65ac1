"""
Progress tracking: durable counters on the execution row, plus a cache-resident
ring buffer of (count, timestamp) checkpoints used only to estimate the rate.

Losing the cache entry makes the ETA unavailable (``None``), never wrong; the
percentage is always derived from the durable counters.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from typing import Any, Optional

from .cache import Cache
from .config import EngineConfig
from .db.session import DbSession
from .events import EXECUTION_PROGRESS, EventSink, emit_safely
from .ledger import ExecutionLedger
from .models import Execution

logger = logging.getLogger(__name__)


def _progress_key(execution_id: str) -> str:
    return f"progress:{execution_id}"


def _notify_key(execution_id: str) -> str:
    return f"progress-notify:{execution_id}"


class ProgressTracker:
    def __init__(
        self,
        ledger: ExecutionLedger,
        cache: Cache,
        events: EventSink,
        config: EngineConfig,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ledger = ledger
        self.cache = cache
        self.events = events
        self.config = config
        self.clock = clock

    def initialize(self, execution: Execution, total_batches: int) -> None:
        """Baseline checkpoint at the execution's current processed count."""
        self.cache.put(
            _progress_key(execution.id),
            {
                "total_batches": total_batches,
                "batch_size": execution.batch_size,
                "started_at": self.clock(),
                "checkpoints": [[execution.processed_records, self.clock()]],
            },
            self.config.progress_cache_ttl_s,
        )

    def update(
        self,
        session: DbSession,
        execution_id: str,
        *,
        processed: int,
        failed: int = 0,
        affected_ids: Iterable[Any] = (),
    ) -> Optional[Execution]:
        """
        Add a finished batch's counts to the execution inside ``session``.

        The increment is one SQL statement. The checkpoint and the throttled
        notification are registered to run after the transaction commits, so
        neither ever reflects a write that was rolled back.
        """
        if processed or failed:
            self.ledger.add_counts(session, execution_id, processed=processed, failed=failed)
        execution = self.ledger.find(session, execution_id)
        if execution is None:
            return None

        affected = len(list(affected_ids))

        def _after_commit() -> None:
            self.record_checkpoint(execution.id, execution.processed_records)
            logger.debug(
                "execution %s progress %d/%d (%d affected in batch)",
                execution.id,
                execution.processed_records,
                execution.total_records,
                affected,
            )
            self.notify(execution)

        session.after_commit(_after_commit)
        return execution

    def record_checkpoint(self, execution_id: str, count: int) -> None:
        key = _progress_key(execution_id)
        data = self.cache.get(key) or {"checkpoints": []}
        checkpoints = list(data.get("checkpoints") or [])
        checkpoints.append([count, self.clock()])
        data["checkpoints"] = checkpoints[-self.config.checkpoint_history:]
        self.cache.put(key, data, self.config.progress_cache_ttl_s)

    def checkpoints(self, execution_id: str) -> list[tuple[int, float]]:
        data = self.cache.get(_progress_key(execution_id)) or {}
        return [(int(c), float(t)) for c, t in data.get("checkpoints") or []]

    def notify(self, execution: Execution, *, force: bool = False) -> bool:
        """
        Emit ``execution.progress`` at most once per ``notify_throttle_ms``
        per execution. ``force`` bypasses the throttle (final update).
        """
        ttl = self.config.notify_throttle_ms / 1000.0
        if force:
            self.cache.put(_notify_key(execution.id), 1, max(ttl, 0.001))
        elif ttl > 0 and not self.cache.add(_notify_key(execution.id), 1, ttl):
            return False
        emit_safely(self.events, EXECUTION_PROGRESS, self.details(execution))
        return True

    def get_progress(self, execution: Execution) -> float:
        if execution.total_records <= 0:
            return 0.0
        pct = execution.processed_records / execution.total_records * 100
        return round(min(100.0, max(0.0, pct)), 2)

    def get_estimated_time_remaining(self, execution: Execution) -> Optional[float]:
        """
        Seconds left at the rate observed between the oldest and newest
        buffered checkpoint. None without two checkpoints, with a
        non-positive rate, or once the execution is terminal.
        """
        if execution.is_terminal:
            return None
        checkpoints = self.checkpoints(execution.id)
        if len(checkpoints) < 2:
            return None
        (first_count, first_at), (last_count, last_at) = checkpoints[0], checkpoints[-1]
        elapsed = last_at - first_at
        if elapsed <= 0:
            return None
        rate = (last_count - first_count) / elapsed
        if rate <= 0:
            return None
        remaining = max(0, execution.total_records - execution.processed_records)
        return round(remaining / rate, 1)

    def details(self, execution: Execution) -> dict[str, Any]:
        elapsed = None
        if execution.started_at is not None:
            end = execution.completed_at or self.ledger.clock()
            elapsed = max(0.0, (end - execution.started_at).total_seconds())
        return {
            "id": execution.id,
            "status": execution.status.value,
            "total_records": execution.total_records,
            "processed_records": execution.processed_records,
            "failed_records": execution.failed_records,
            "progress_percentage": self.get_progress(execution),
            "estimated_seconds_remaining": self.get_estimated_time_remaining(execution),
            "elapsed_seconds": elapsed,
        }

    def clear(self, execution_id: str) -> None:
        self.cache.forget(_progress_key(execution_id))
        self.cache.forget(_notify_key(execution_id))
