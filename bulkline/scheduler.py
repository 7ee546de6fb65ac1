from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.engine import Engine

from .config import EngineConfig
from .db.session import DbSession
from .dispatcher import BatchDispatcher
from .errors import ExecutionNotFound, SchedulingConflict, SpecInvalid
from .events import EXECUTION_CANCELLED, EXECUTION_COMPLETED, EventSink, emit_safely
from .ledger import ExecutionLedger
from .models import Execution, ExecutionStatus, utcnow
from .resolver import TargetResolver

logger = logging.getLogger(__name__)


class Scheduler:
    """
    Deferred executions: hold them in ``scheduled`` until due, then promote.

    Promotion is a compare-and-set ``scheduled -> pending`` on the row, so a
    second ``process_due`` (or a second scheduler process) finds nothing left
    to promote and never dispatches twice.
    """

    def __init__(
        self,
        engine: Engine,
        ledger: ExecutionLedger,
        resolver: TargetResolver,
        dispatcher: BatchDispatcher,
        events: EventSink,
        config: EngineConfig,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.ledger = ledger
        self.resolver = resolver
        self.dispatcher = dispatcher
        self.events = events
        self.config = config
        self.clock = clock

    def validate_time(self, when: datetime) -> datetime:
        if when.tzinfo is not None:
            when = when.astimezone(timezone.utc).replace(tzinfo=None)
        now = self.clock()
        if when <= now:
            raise SpecInvalid("scheduled time must be in the future")
        if when > now + timedelta(days=self.config.max_schedule_days_ahead):
            raise SpecInvalid(
                f"cannot schedule more than {self.config.max_schedule_days_ahead} days ahead"
            )
        return when

    def list_scheduled(self, actor: Optional[str] = None) -> list[Execution]:
        return self.ledger.list_scheduled(actor)

    def list_upcoming(self, hours_ahead: int = 24, actor: Optional[str] = None) -> list[Execution]:
        return self.ledger.list_scheduled(actor, until=self.clock() + timedelta(hours=hours_ahead))

    def process_due(self) -> int:
        """Promote and dispatch every due execution. Returns how many were promoted."""
        promoted = 0
        for execution_id in self.ledger.list_due(self.clock()):
            if self._promote(execution_id):
                promoted += 1
        if promoted:
            logger.info("promoted %d scheduled executions", promoted)
        return promoted

    def _promote(self, execution_id: str) -> bool:
        with DbSession(self.engine) as session:
            if not self.ledger.transition(
                session, execution_id, [ExecutionStatus.SCHEDULED], ExecutionStatus.PENDING
            ):
                return False
            execution = self.ledger.find(session, execution_id)

        try:
            target = self.resolver.resolve(execution.entity_type, execution.filter_spec)
            # the target set may have drifted since it was scheduled
            total = self.resolver.count(target)
            with DbSession(self.engine) as session:
                self.ledger.update_fields(
                    session, execution_id, [ExecutionStatus.PENDING], total_records=total
                )
            execution.total_records = total
            batches = self.dispatcher.dispatch(execution, target)
        except Exception as exc:
            logger.exception("scheduled execution %s could not be dispatched", execution_id)
            with DbSession(self.engine) as session:
                self.ledger.transition(
                    session,
                    execution_id,
                    [ExecutionStatus.PENDING],
                    ExecutionStatus.FAILED,
                    completed_at=self.clock(),
                    error_detail={"reason": f"scheduled dispatch failed: {exc}", "processed": 0, "failed": 0},
                )
            return True

        if batches == 0:
            emit_safely(self.events, EXECUTION_COMPLETED, {"id": execution_id, "total_records": 0})
        return True

    def cancel(self, execution_id: str) -> Execution:
        """scheduled -> cancelled. Anything else is a SchedulingConflict."""
        with DbSession(self.engine) as session:
            execution = self.ledger.find(session, execution_id)
            if execution is None:
                raise ExecutionNotFound(f"Execution {execution_id!r} not found")
            if execution.status is not ExecutionStatus.SCHEDULED or not self.ledger.transition(
                session,
                execution_id,
                [ExecutionStatus.SCHEDULED],
                ExecutionStatus.CANCELLED,
                completed_at=self.clock(),
            ):
                raise SchedulingConflict(
                    f"Execution {execution_id!r} is {execution.status.value}, not scheduled"
                )
            cancelled = self.ledger.find(session, execution_id)
        emit_safely(self.events, EXECUTION_CANCELLED, {"id": execution_id, "processed_records": 0})
        return cancelled

    def reschedule(self, execution_id: str, when: datetime) -> Execution:
        when = self.validate_time(when)
        with DbSession(self.engine) as session:
            execution = self.ledger.find(session, execution_id)
            if execution is None:
                raise ExecutionNotFound(f"Execution {execution_id!r} not found")
            changes: dict = {"scheduled_for": when}
            if execution.undo_expires_at is not None and execution.scheduled_for is not None:
                # the undo window moves with the activation time
                changes["undo_expires_at"] = execution.undo_expires_at + (when - execution.scheduled_for)
            if not self.ledger.update_fields(
                session, execution_id, [ExecutionStatus.SCHEDULED], **changes
            ):
                raise SchedulingConflict(
                    f"Execution {execution_id!r} is {execution.status.value}, not scheduled"
                )
            updated = self.ledger.find(session, execution_id)
        logger.info("execution %s rescheduled for %s", execution_id, when.isoformat())
        return updated

