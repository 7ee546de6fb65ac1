"""
Batch worker: processes one batch message end to end.

Per record, in its own transaction: fetch the record, snapshot it (when undo
is enabled), run the action, then advance the batch cursor with a
compare-and-set on the current position. A record is therefore counted at
most once even when a message is redelivered, and a retried batch resumes
where the previous attempt stopped.

The execution's cancel flag (its status) is read before every record.

When the batch closes, its counts are added to the execution in the same
transaction that flips the batch to a terminal status, so they are added
exactly once. If no batch is left open afterwards, the execution moves to
its terminal status.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from .actions.registry import ActionHandler, ActionRegistry
from .config import EngineConfig
from .db.session import DbSession
from .dispatcher import batch_message
from .errors import BatchLevelFailure, BatchTimeout, RecordLevelFailure, SpecInvalid
from .events import EXECUTION_COMPLETED, EXECUTION_FAILED, EXECUTION_STARTED, EventSink, emit_safely
from .ledger import ExecutionLedger
from .metrics.registry import (
    BATCH_DURATION_SECONDS,
    BATCH_RETRIES_TOTAL,
    BATCHES_TOTAL,
    RECORDS_TOTAL,
)
from .models import Batch, BatchStatus, Execution, ExecutionStatus, utcnow
from .progress import ProgressTracker
from .queue.models import QueueMessage, WorkQueue
from .records import EntityRegistry
from .undo import UndoManager

logger = logging.getLogger(__name__)

_OPEN = (ExecutionStatus.PENDING, ExecutionStatus.PROCESSING)
TRANSIENT_ERRORS = (OperationalError, BatchLevelFailure)


class Outcome(str, Enum):
    DONE = "done"
    CANCELLED = "cancelled"
    ABORTED = "aborted"
    SUPERSEDED = "superseded"


class _CursorMoved(Exception):
    """Another delivery of the same batch advanced the cursor first."""


class BatchWorker:
    def __init__(
        self,
        engine: Engine,
        ledger: ExecutionLedger,
        entities: EntityRegistry,
        actions: ActionRegistry,
        tracker: ProgressTracker,
        undo: UndoManager,
        queue: WorkQueue,
        events: EventSink,
        config: EngineConfig,
        *,
        monotonic: Callable[[], float] = time.monotonic,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.ledger = ledger
        self.entities = entities
        self.actions = actions
        self.tracker = tracker
        self.undo = undo
        self.queue = queue
        self.events = events
        self.config = config
        self.monotonic = monotonic
        self.clock = clock

    def __call__(self, msg: QueueMessage) -> None:
        self.handle(msg)

    def handle(self, msg: QueueMessage) -> None:
        batch_id = msg.payload.get("batch_id")
        if batch_id is None:
            logger.error("dropping malformed batch message %s: %r", msg.id, msg.payload)
            self.queue.dead_letter(msg, "malformed message")
            return

        with DbSession(self.engine) as session:
            batch = self.ledger.find_batch(session, int(batch_id))
            execution = self.ledger.find(session, batch.execution_id) if batch else None
        if batch is None or execution is None:
            logger.warning("batch %s no longer exists; skipping message %s", batch_id, msg.id)
            return
        if batch.status.is_terminal:
            logger.debug("batch %s already %s; skipping duplicate delivery", batch.id, batch.status.value)
            return
        if execution.is_terminal:
            self._close(execution, batch.id, BatchStatus.CANCELLED)
            return

        started = False
        with DbSession(self.engine) as session:
            if not self.ledger.claim_batch(session, batch.id):
                return
            started = self.ledger.transition(
                session,
                execution.id,
                [ExecutionStatus.PENDING],
                ExecutionStatus.PROCESSING,
                started_at=self.clock(),
            )
            batch = self.ledger.find_batch(session, batch.id)
        if started:
            emit_safely(self.events, EXECUTION_STARTED, {"id": execution.id, "total_records": execution.total_records})

        began = self.monotonic()
        try:
            handler = self.actions.get(execution.action_name)
            outcome, error = self._process(execution, batch, handler, began + self.config.batch_timeout_s)
        except SpecInvalid as exc:
            # not retryable on this worker: the action is not registered here
            logger.error("batch %s cannot run: %s", batch.id, exc)
            self._give_up(msg, execution, batch.id, exc)
            return
        except TRANSIENT_ERRORS as exc:
            self._retry_or_give_up(msg, execution, batch.id, exc)
            return
        except Exception as exc:
            logger.exception("unexpected failure in batch %s of execution %s", batch.id, execution.id)
            self._retry_or_give_up(msg, execution, batch.id, exc)
            return
        finally:
            BATCH_DURATION_SECONDS.labels(action=execution.action_name).observe(self.monotonic() - began)

        if outcome is Outcome.SUPERSEDED:
            logger.info("batch %s is being processed by another delivery; stopping", batch.id)
            return
        if outcome is Outcome.ABORTED:
            self._close(execution, batch.id, BatchStatus.FAILED, error_detail=error)
            self._fail_execution(execution.id, error)
            return
        status = BatchStatus.CANCELLED if outcome is Outcome.CANCELLED else BatchStatus.COMPLETED
        self._close(execution, batch.id, status)
        self.check_completion(execution.id)

    # ------------------------------------------------------------------
    # record loop
    # ------------------------------------------------------------------

    def _process(
        self,
        execution: Execution,
        batch: Batch,
        handler: ActionHandler,
        deadline: float,
    ) -> tuple[Outcome, Optional[dict]]:
        params = execution.parameters or {}
        failed_ids = list(batch.failed_ids)
        position = batch.position
        while position < len(batch.record_ids):
            if self.monotonic() > deadline:
                raise BatchTimeout(
                    f"batch {batch.id} exceeded {self.config.batch_timeout_s}s at record {position}"
                )
            status = self.ledger.status_of(execution.id)
            if status is None or status.is_terminal:
                logger.info("execution %s is %s; stopping batch %s at record %d", execution.id, status, batch.id, position)
                return Outcome.CANCELLED, None

            record_id = batch.record_ids[position]
            try:
                with DbSession(self.engine) as session:
                    self._apply(session, execution, batch.id, position, record_id, handler, params)
            except _CursorMoved:
                return Outcome.SUPERSEDED, None
            except TRANSIENT_ERRORS:
                raise
            except Exception as exc:
                failed_ids.append(record_id)
                error = {"record_id": record_id, "error": str(exc), "type": type(exc).__name__}
                logger.warning(
                    "record %r failed in batch %s of execution %s: %s", record_id, batch.id, execution.id, exc
                )
                RECORDS_TOTAL.labels(action=execution.action_name, outcome="failed").inc()
                with DbSession(self.engine) as session:
                    moved = self.ledger.advance_batch(
                        session, batch.id, position, failed=1, failed_ids=failed_ids, error_detail=error
                    )
                if not moved:
                    return Outcome.SUPERSEDED, None
                if self.config.stop_on_record_error:
                    return Outcome.ABORTED, {
                        "reason": f"record {record_id!r} failed: {exc}",
                        **error,
                    }
            else:
                RECORDS_TOTAL.labels(action=execution.action_name, outcome="processed").inc()
            position += 1
        return Outcome.DONE, None

    def _apply(
        self,
        session: DbSession,
        execution: Execution,
        batch_id: int,
        position: int,
        record_id: Any,
        handler: ActionHandler,
        params: Mapping[str, Any],
    ) -> None:
        store = self.entities.store(session, execution.entity_type)
        record = store.fetch(record_id)
        if record is None:
            raise RecordLevelFailure(f"record {record_id!r} not found")
        if execution.undo_enabled:
            self.undo.capture_snapshot(
                session,
                execution,
                store,
                record,
                handler.undo_operation_type(store, params),
                handler.declare_undo_fields(store, params),
            )
        if handler.execute(store, record, params) is False:
            raise RecordLevelFailure(f"action {execution.action_name!r} reported failure for {record_id!r}")
        if not self.ledger.advance_batch(session, batch_id, position, processed=1):
            # roll back this record's mutation and snapshot
            raise _CursorMoved()

    # ------------------------------------------------------------------
    # batch / execution completion
    # ------------------------------------------------------------------

    def _close(
        self,
        execution: Execution,
        batch_id: int,
        status: BatchStatus,
        *,
        error_detail: Optional[dict] = None,
        count_remaining_as_failed: bool = False,
    ) -> bool:
        """
        Flip an open batch to ``status`` and add its counts to the execution,
        both in one transaction. Returns False if the batch was already closed.
        """
        with DbSession(self.engine) as session:
            current = self.ledger.find_batch(session, batch_id)
            if current is None or current.status.is_terminal:
                return False
            extra = len(current.remaining_ids) if count_remaining_as_failed else 0
            if not self.ledger.finish_batch(
                session,
                batch_id,
                status,
                expected=[current.status],
                extra_failed=extra,
                error_detail=error_detail,
            ):
                return False
            failed = set(map(repr, current.failed_ids))
            done = current.record_ids[:current.position]
            self.tracker.update(
                session,
                execution.id,
                processed=current.processed_count,
                failed=current.failed_count + extra,
                affected_ids=[r for r in done if repr(r) not in failed],
            )
        BATCHES_TOTAL.labels(action=execution.action_name, status=status.value).inc()
        logger.info(
            "batch %s of execution %s %s: %d processed, %d failed",
            batch_id,
            execution.id,
            status.value,
            current.processed_count,
            current.failed_count + extra,
        )
        return True

    def check_completion(self, execution_id: str) -> Optional[ExecutionStatus]:
        """
        Move the execution to completed/failed once no batch is open.

        Runs in its own transaction after the batch close committed, so the
        last of several concurrently finishing batches always sees zero open
        batches; the status compare-and-set lets only one of them win.
        """
        with DbSession(self.engine) as session:
            if self.ledger.outstanding_batches(session, execution_id) > 0:
                return None
            execution = self.ledger.find(session, execution_id)
            if execution is None or execution.status not in _OPEN:
                return None
            target, detail = self._terminal_outcome(execution)
            if not self.ledger.transition(
                session,
                execution_id,
                _OPEN,
                target,
                completed_at=self.clock(),
                error_detail=detail,
            ):
                return None
            final = self.ledger.find(session, execution_id)
            session.after_commit(lambda: self._announce(final))
        return target

    def _terminal_outcome(self, execution: Execution) -> tuple[ExecutionStatus, Optional[dict]]:
        total = execution.total_records
        failed = execution.failed_records
        if total and failed / total > self.config.max_failure_ratio:
            return ExecutionStatus.FAILED, {
                "reason": (
                    f"{failed} of {total} records failed, above the allowed ratio "
                    f"of {self.config.max_failure_ratio:.0%}"
                ),
                "processed": execution.processed_records,
                "failed": failed,
            }
        if failed:
            return ExecutionStatus.COMPLETED, {
                "reason": f"{failed} of {total} records failed",
                "processed": execution.processed_records,
                "failed": failed,
            }
        return ExecutionStatus.COMPLETED, None

    def _announce(self, execution: Execution) -> None:
        self.tracker.notify(execution, force=True)
        name = EXECUTION_COMPLETED if execution.status is ExecutionStatus.COMPLETED else EXECUTION_FAILED
        emit_safely(self.events, name, self.tracker.details(execution) | {"error_detail": execution.error_detail})
        self.tracker.clear(execution.id)
        logger.info(
            "execution %s %s: %d processed, %d failed of %d",
            execution.id,
            execution.status.value,
            execution.processed_records,
            execution.failed_records,
            execution.total_records,
        )

    def _fail_execution(self, execution_id: str, error: Optional[dict]) -> None:
        with DbSession(self.engine) as session:
            execution = self.ledger.find(session, execution_id)
            if execution is None:
                return
            detail = dict(error or {})
            detail.update(processed=execution.processed_records, failed=execution.failed_records)
            if not self.ledger.transition(
                session,
                execution_id,
                _OPEN,
                ExecutionStatus.FAILED,
                completed_at=self.clock(),
                error_detail=detail,
            ):
                return
            final = self.ledger.find(session, execution_id)
            session.after_commit(lambda: self._announce(final))

    # ------------------------------------------------------------------
    # retries
    # ------------------------------------------------------------------

    def backoff_for(self, attempt: int) -> float:
        return min(self.config.retry_backoff_s * attempt, self.config.max_backoff_s)

    def _retry_or_give_up(self, msg: QueueMessage, execution: Execution, batch_id: int, exc: BaseException) -> None:
        with DbSession(self.engine) as session:
            batch = self.ledger.find_batch(session, batch_id)
        if batch is None or batch.status.is_terminal:
            return
        if batch.attempts > self.config.max_retries:
            self._give_up(msg, execution, batch_id, exc)
            return

        error = {"error": str(exc), "type": type(exc).__name__, "attempt": batch.attempts}
        with DbSession(self.engine) as session:
            released = self.ledger.release_batch(session, batch_id, error)
        if not released:
            return
        delay = self.backoff_for(batch.attempts)
        self.queue.enqueue(batch_message(execution.id, batch_id, batch.attempts + 1), delay_s=delay)
        BATCH_RETRIES_TOTAL.labels(action=execution.action_name).inc()
        logger.warning(
            "batch %s of execution %s failed (attempt %d/%d), retrying in %.1fs: %s",
            batch_id,
            execution.id,
            batch.attempts,
            self.config.max_retries + 1,
            delay,
            exc,
        )

    def _give_up(self, msg: QueueMessage, execution: Execution, batch_id: int, exc: BaseException) -> None:
        """Close the batch as failed, its untried records counted as failed, and dead-letter the message."""
        error = {"reason": f"batch failed permanently: {exc}", "type": type(exc).__name__}
        self._close(
            execution,
            batch_id,
            BatchStatus.FAILED,
            error_detail=error,
            count_remaining_as_failed=True,
        )
        logger.error("batch %s of execution %s failed permanently: %s", batch_id, execution.id, exc)
        self.queue.dead_letter(msg, str(exc)[:500])
        self.check_completion(execution.id)
