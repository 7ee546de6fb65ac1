"""
Batch dispatch: partition the resolved id stream into batches and enqueue one
message per batch.

Dispatch runs in three steps so that ``processed + failed <= total`` holds at
every instant even when the target set drifted since it was counted:

1. stream ids and write pending batch rows (bounded by the batch size),
2. set the execution total to the exact number of ids written,
3. enqueue one message per batch.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import Any, Optional

from sqlalchemy.engine import Engine

from .config import EngineConfig
from .db.session import DbSession
from .errors import QueueError
from .ledger import ExecutionLedger
from .memory import MemoryGuard
from .models import Execution, ExecutionStatus
from .progress import ProgressTracker
from .queue.models import WorkQueue
from .resolver import ResolvedTarget, TargetResolver

logger = logging.getLogger(__name__)


def batch_message(execution_id: str, batch_id: int, attempt: int = 1) -> dict[str, Any]:
    return {"execution_id": execution_id, "batch_id": batch_id, "attempt": attempt}


class BatchDispatcher:
    def __init__(
        self,
        engine: Engine,
        ledger: ExecutionLedger,
        resolver: TargetResolver,
        queue: WorkQueue,
        tracker: ProgressTracker,
        config: EngineConfig,
        *,
        memory: Optional[MemoryGuard] = None,
    ) -> None:
        self.engine = engine
        self.ledger = ledger
        self.resolver = resolver
        self.queue = queue
        self.tracker = tracker
        self.config = config
        self.memory = memory or MemoryGuard(config)

    def _chunks(self, ids: Iterator[Any], batch_size: int) -> Iterator[list]:
        chunk: list = []
        size = self.memory.adjust(batch_size)
        for record_id in ids:
            chunk.append(record_id)
            if len(chunk) >= size:
                yield chunk
                chunk = []
                size = self.memory.adjust(batch_size)
        if chunk:
            yield chunk

    def dispatch(self, execution: Execution, target: ResolvedTarget) -> int:
        """
        Create and enqueue the batches of a pending execution. Returns the
        number of batches. An empty target completes the execution at once.
        """
        batch_ids: list[int] = []
        total = 0
        for sequence, chunk in enumerate(self._chunks(self.resolver.iter_ids(target), execution.batch_size)):
            with DbSession(self.engine) as session:
                batch_ids.append(self.ledger.create_batch(session, execution.id, sequence, chunk))
            total += len(chunk)

        with DbSession(self.engine) as session:
            if total == 0:
                self.ledger.transition(
                    session,
                    execution.id,
                    [ExecutionStatus.PENDING],
                    ExecutionStatus.COMPLETED,
                    total_records=0,
                    completed_at=self.ledger.clock(),
                )
                return 0
            self.ledger.update_fields(
                session, execution.id, [ExecutionStatus.PENDING], total_records=total
            )
            current = self.ledger.find(session, execution.id)

        if total != execution.total_records:
            logger.info(
                "execution %s target drifted: counted %d, dispatched %d",
                execution.id,
                execution.total_records,
                total,
            )
        self.tracker.initialize(current, len(batch_ids))

        try:
            for batch_id in batch_ids:
                self.queue.enqueue(batch_message(execution.id, batch_id))
        except QueueError as exc:
            logger.exception("enqueue failed for execution %s", execution.id)
            with DbSession(self.engine) as session:
                self.ledger.transition(
                    session,
                    execution.id,
                    [ExecutionStatus.PENDING, ExecutionStatus.PROCESSING],
                    ExecutionStatus.FAILED,
                    completed_at=self.ledger.clock(),
                    error_detail={"reason": f"dispatch failed: {exc}", "processed": 0, "failed": 0},
                )
            raise

        logger.info(
            "dispatched execution %s: %d records in %d batches", execution.id, total, len(batch_ids)
        )
        return len(batch_ids)
