"""
The public surface: submit, preview, status, cancel, undo and the scheduled
execution operations, wired over one database engine, one work queue and one
cache.

Usage:
    entities = EntityRegistry(EntityType("users", "users", soft_delete_column="deleted_at"))
    bulk = BulkActionEngine(db_engine, entities)

    execution = bulk.submit(TargetSpec("users", "delete", {"where": [...]}, actor="u1", undo=True))
    bulk.drain()                      # or run `bulkline worker` elsewhere
    bulk.get_status(execution.id).to_dict()
    bulk.undo(execution.id, actor="u1")
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.engine import Engine

from .actions.builtin import default_registry
from .actions.registry import ActionRegistry
from .cache import Cache, MemoryCache
from .config import EngineConfig
from .db.session import DbSession
from .dispatcher import BatchDispatcher
from .errors import InvalidTransition, SpecInvalid, Unauthorized
from .events import (
    EXECUTION_CANCELLED,
    EXECUTION_COMPLETED,
    EXECUTION_SCHEDULED,
    EventSink,
    LoggingEventSink,
    emit_safely,
)
from .gate import RateGate
from .ledger import ExecutionLedger
from .memory import MemoryGuard
from .models import (
    Execution,
    ExecutionStatus,
    ExecutionStatusView,
    PreviewResult,
    TargetSpec,
    utcnow,
)
from .progress import ProgressTracker
from .queue.consumer import QueueConsumer
from .queue.local import LocalQueue
from .queue.models import WorkQueue
from .records import EntityRegistry
from .resolver import TargetResolver
from .scheduler import Scheduler
from .undo import UndoManager, UndoResult
from .worker import BatchWorker

logger = logging.getLogger(__name__)

Authorizer = Callable[[Optional[str], str, str], bool]


class BulkActionEngine:
    def __init__(
        self,
        engine: Engine,
        entities: EntityRegistry,
        *,
        actions: Optional[ActionRegistry] = None,
        queue: Optional[WorkQueue] = None,
        cache: Optional[Cache] = None,
        events: Optional[EventSink] = None,
        config: Optional[EngineConfig] = None,
        authorizer: Optional[Authorizer] = None,
        memory: Optional[MemoryGuard] = None,
        clock: Callable[[], datetime] = utcnow,
        timer: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.engine = engine
        self.entities = entities
        self.config = config or EngineConfig()
        self.actions = actions if actions is not None else default_registry(clock)
        self.queue = queue if queue is not None else LocalQueue(clock=timer)
        self.cache = cache if cache is not None else MemoryCache(clock=timer)
        self.events = events or LoggingEventSink()
        self.authorizer = authorizer
        self.clock = clock

        self.ledger = ExecutionLedger(engine, clock=clock)
        self.resolver = TargetResolver(engine, entities)
        self.tracker = ProgressTracker(self.ledger, self.cache, self.events, self.config, clock=timer)
        self.undo_manager = UndoManager(engine, self.ledger, entities, self.events, self.config, clock=clock)
        self.gate = RateGate(self.ledger, self.cache, self.config, clock=timer)
        self.dispatcher = BatchDispatcher(
            engine,
            self.ledger,
            self.resolver,
            self.queue,
            self.tracker,
            self.config,
            memory=memory or MemoryGuard(self.config),
        )
        self.worker = BatchWorker(
            engine,
            self.ledger,
            entities,
            self.actions,
            self.tracker,
            self.undo_manager,
            self.queue,
            self.events,
            self.config,
            monotonic=monotonic,
            clock=clock,
        )
        self.scheduler = Scheduler(
            engine, self.ledger, self.resolver, self.dispatcher, self.events, self.config, clock=clock
        )

    # ------------------------------------------------------------------
    # submission
    # ------------------------------------------------------------------

    def _authorize(self, actor: Optional[str], action: str, entity_type: str) -> None:
        if self.authorizer is not None and not self.authorizer(actor, action, entity_type):
            raise Unauthorized(f"{actor!r} may not run {action!r} on {entity_type!r}")

    def _batch_size(self, requested: Optional[int]) -> int:
        if requested is None:
            return self.config.batch_size
        if not isinstance(requested, int) or isinstance(requested, bool) or requested <= 0:
            raise SpecInvalid("batch_size must be a positive integer")
        return self.config.clamp_batch_size(requested)

    def _undo_window(self, spec: TargetSpec, starts_at: datetime) -> Optional[datetime]:
        if not spec.undo:
            return None
        days = self.config.undo_expiry_days if spec.undo_expiry_days is None else spec.undo_expiry_days
        if not 0 < days <= self.config.max_undo_expiry_days:
            raise SpecInvalid(f"undo_expiry_days must be between 1 and {self.config.max_undo_expiry_days}")
        return starts_at + timedelta(days=days)

    def submit(self, spec: TargetSpec) -> Execution:
        """
        Validate, admit and start (or schedule) a bulk action.

        Raises SpecInvalid, Unauthorized or RateLimited synchronously; none of
        them leaves any durable state behind. If dispatch fails the execution
        and its batches are deleted before the error propagates.
        """
        handler = self.actions.get(spec.action)
        self._authorize(spec.actor, spec.action, spec.entity_type)
        target = self.resolver.resolve(spec.entity_type, spec.filter)
        with DbSession(self.engine) as session:
            store = self.entities.store(session, spec.entity_type)
            parameters = self.actions.validate(spec.action, store, spec.parameters or {})
        if spec.undo and not getattr(handler, "supports_undo", True):
            raise SpecInvalid(f"action {spec.action!r} does not support undo")

        batch_size = self._batch_size(spec.batch_size)
        scheduled_for = None
        if spec.scheduled_for is not None:
            scheduled_for = self.scheduler.validate_time(spec.scheduled_for)
        undo_expires_at = self._undo_window(spec, scheduled_for or self.clock())

        total = self.resolver.count(target)
        self.gate.attempt(spec.actor, total).raise_for_denial()

        status = ExecutionStatus.SCHEDULED if scheduled_for else ExecutionStatus.PENDING
        with DbSession(self.engine) as session:
            if status is ExecutionStatus.PENDING:
                self.gate.confirm_slot(session, spec.actor).raise_for_denial()
            execution_id = self.ledger.create(
                session,
                entity_type=spec.entity_type,
                filter_spec=target.spec.to_dict(),
                action_name=spec.action,
                parameters=parameters,
                batch_size=batch_size,
                total_records=total,
                status=status,
                actor=spec.actor,
                undo_enabled=spec.undo,
                undo_expires_at=undo_expires_at,
                scheduled_for=scheduled_for,
            )
            execution = self.ledger.find(session, execution_id)

        if status is ExecutionStatus.SCHEDULED:
            self._cool_down_if_large(spec.actor, total)
            logger.info("execution %s scheduled for %s", execution_id, scheduled_for.isoformat())
            emit_safely(
                self.events,
                EXECUTION_SCHEDULED,
                {"id": execution_id, "scheduled_for": scheduled_for.isoformat(), "total_records": total},
            )
            return execution

        try:
            dispatched = self.dispatcher.dispatch(execution, target)
        except Exception:
            logger.exception("dispatch of execution %s failed; discarding it", execution_id)
            self._discard(execution_id)
            raise
        self._cool_down_if_large(spec.actor, total)
        if dispatched == 0:
            emit_safely(self.events, EXECUTION_COMPLETED, {"id": execution_id, "total_records": 0})
        return self.ledger.get(execution_id)

    def _cool_down_if_large(self, actor: Optional[str], total: int) -> None:
        if total >= self.config.large_operation_threshold:
            self.gate.set_cooldown(actor)

    def _discard(self, execution_id: str) -> None:
        # messages already enqueued find no batch row and are acked as stale
        try:
            self.ledger.discard(execution_id)
        except Exception:
            logger.exception("could not discard execution %s", execution_id)
        self.tracker.clear(execution_id)

    def preview(self, spec: TargetSpec, limit: Optional[int] = None) -> PreviewResult:
        self._authorize(spec.actor, spec.action, spec.entity_type)
        self.actions.get(spec.action)
        limit = self.config.preview_limit if limit is None else min(limit, self.config.preview_limit)
        return self.resolver.preview(spec.entity_type, spec.filter, limit)

    # ------------------------------------------------------------------
    # status & control
    # ------------------------------------------------------------------

    def get(self, execution_id: str) -> Execution:
        return self.ledger.get(execution_id)

    def get_status(self, execution_id: str) -> ExecutionStatusView:
        execution = self.ledger.get(execution_id)
        details = self.tracker.details(execution)
        return ExecutionStatusView(
            execution=execution,
            progress_percentage=details["progress_percentage"],
            estimated_seconds_remaining=details["estimated_seconds_remaining"],
            batches=self.ledger.batch_tally(execution_id),
            elapsed_seconds=details["elapsed_seconds"],
        )

    def cancel(self, execution_id: str) -> Execution:
        """
        Cancel a scheduled, pending or running execution. Records already
        processed stay processed; remaining records are never touched.
        """
        execution = self.ledger.get(execution_id)
        if execution.status is ExecutionStatus.SCHEDULED:
            return self.scheduler.cancel(execution_id)
        with DbSession(self.engine) as session:
            cancelled = self.ledger.transition(
                session,
                execution_id,
                [ExecutionStatus.PENDING, ExecutionStatus.PROCESSING],
                ExecutionStatus.CANCELLED,
                completed_at=self.clock(),
            )
        if not cancelled:
            current = self.ledger.get(execution_id)
            raise InvalidTransition(f"Execution {execution_id!r} is already {current.status.value}")
        current = self.ledger.get(execution_id)
        emit_safely(
            self.events,
            EXECUTION_CANCELLED,
            {"id": execution_id, "processed_records": current.processed_records},
        )
        self.tracker.clear(execution_id)
        return current

    # ------------------------------------------------------------------
    # undo
    # ------------------------------------------------------------------

    def undo(self, execution_id: str, actor: Optional[str] = None) -> UndoResult:
        return self.undo_manager.undo(execution_id, actor)

    def can_undo(self, execution_id: str) -> bool:
        return self.undo_manager.can_undo(self.ledger.get(execution_id))

    def undo_time_remaining(self, execution_id: str) -> Optional[timedelta]:
        return self.undo_manager.get_time_remaining(self.ledger.get(execution_id))

    # ------------------------------------------------------------------
    # scheduling
    # ------------------------------------------------------------------

    def list_scheduled(self, actor: Optional[str] = None) -> list[Execution]:
        return self.scheduler.list_scheduled(actor)

    def list_upcoming(self, hours_ahead: int = 24, actor: Optional[str] = None) -> list[Execution]:
        return self.scheduler.list_upcoming(hours_ahead, actor)

    def reschedule(self, execution_id: str, when: datetime) -> Execution:
        return self.scheduler.reschedule(execution_id, when)

    def process_due(self) -> int:
        return self.scheduler.process_due()

    # ------------------------------------------------------------------
    # workers & maintenance
    # ------------------------------------------------------------------

    def consumer(self, *, block_ms: int = 5_000, claim_idle_ms: int = 60_000) -> QueueConsumer:
        return QueueConsumer(self.queue, block_ms=block_ms, claim_idle_ms=claim_idle_ms)

    def drain(self, *, max_messages: Optional[int] = None, block_ms: int = 50) -> int:
        """Process queued batch messages in this thread until the queue is idle."""
        return self.consumer().drain(handler=self.worker.handle, block_ms=block_ms, max_messages=max_messages)

    def cleanup(self) -> dict[str, int]:
        purged = self.undo_manager.purge_expired()
        cutoff = self.clock() - timedelta(days=self.config.execution_retention_days)
        removed = self.ledger.delete_finished_before(cutoff)
        return {"snapshots_purged": purged, "executions_removed": removed}

