"""
Execution ledger: the persisted record of every bulk operation and its batches.

All status changes are compare-and-set (``guarded_update``) on the current
status and all counter changes are single-statement increments
(``atomic_increment``). Nothing here reads a counter, adds in Python and
writes it back.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import and_, delete, func, select
from sqlalchemy.engine import Engine

from .db.helpers import atomic_increment, guarded_update
from .db.schema import batches, executions, snapshots
from .db.session import DbSession
from .errors import ExecutionNotFound
from .models import (
    Batch,
    BatchStatus,
    Execution,
    ExecutionStatus,
    TERMINAL_STATUSES,
    utcnow,
)

logger = logging.getLogger(__name__)

_OPEN_BATCH_STATUSES = (BatchStatus.PENDING.value, BatchStatus.PROCESSING.value)
_ACTIVE_STATUSES = (ExecutionStatus.PENDING.value, ExecutionStatus.PROCESSING.value)


def _values(statuses: Iterable[Any]) -> list[str]:
    return [getattr(s, "value", s) for s in statuses]


class ExecutionLedger:
    def __init__(self, engine: Engine, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.engine = engine
        self.clock = clock

    # ------------------------------------------------------------------
    # executions
    # ------------------------------------------------------------------

    def create(
        self,
        session: DbSession,
        *,
        entity_type: str,
        filter_spec: dict,
        action_name: str,
        parameters: dict,
        batch_size: int,
        total_records: int,
        status: ExecutionStatus,
        actor: Optional[str] = None,
        undo_enabled: bool = False,
        undo_expires_at: Optional[datetime] = None,
        scheduled_for: Optional[datetime] = None,
    ) -> str:
        execution_id = str(uuid.uuid4())
        now = self.clock()
        session.insert(
            executions.insert().values(
                id=execution_id,
                entity_type=entity_type,
                filter_spec=filter_spec,
                action_name=action_name,
                parameters=parameters,
                batch_size=batch_size,
                total_records=total_records,
                processed_records=0,
                failed_records=0,
                status=status.value,
                actor=actor,
                undo_enabled=undo_enabled,
                undo_expires_at=undo_expires_at,
                scheduled_for=scheduled_for,
                created_at=now,
                updated_at=now,
            )
        )
        return execution_id

    def find(self, session: DbSession, execution_id: str) -> Optional[Execution]:
        row = session.fetch_one(select(executions).where(executions.c.id == execution_id))
        return Execution.from_row(row) if row else None

    def get(self, execution_id: str) -> Execution:
        with DbSession(self.engine) as session:
            execution = self.find(session, execution_id)
        if execution is None:
            raise ExecutionNotFound(f"Execution {execution_id!r} not found")
        return execution

    def status_of(self, execution_id: str) -> Optional[ExecutionStatus]:
        """Current status in a short read-only session (the per-record cancel check)."""
        with DbSession(self.engine) as session:
            raw = session.execute_scalar(
                select(executions.c.status).where(executions.c.id == execution_id)
            )
        return ExecutionStatus(raw) if raw is not None else None

    def transition(
        self,
        session: DbSession,
        execution_id: str,
        expected: Iterable[ExecutionStatus],
        target: ExecutionStatus,
        **also_set: Any,
    ) -> bool:
        """
        Move an execution to ``target`` only if it is currently in ``expected``.

        Terminal statuses are never valid preconditions, so nothing can leave
        a terminal state through here. Returns False on a lost race.
        """
        allowed = [s for s in expected if s not in TERMINAL_STATUSES]
        if not allowed:
            return False
        updates = {"status": target.value, "updated_at": self.clock(), **also_set}
        rc = guarded_update(
            session, executions, {"id": execution_id}, {"status": _values(allowed)}, updates
        )
        if rc:
            logger.info("execution %s -> %s", execution_id, target.value)
        return rc == 1

    def add_counts(self, session: DbSession, execution_id: str, *, processed: int = 0, failed: int = 0) -> int:
        return atomic_increment(
            session,
            executions,
            {"id": execution_id},
            {"processed_records": processed, "failed_records": failed},
            also_set={"updated_at": self.clock()},
        )

    def update_fields(
        self,
        session: DbSession,
        execution_id: str,
        expected: Iterable[ExecutionStatus],
        **updates: Any,
    ) -> bool:
        """Non-status field update guarded by the current status."""
        updates["updated_at"] = self.clock()
        rc = guarded_update(
            session, executions, {"id": execution_id}, {"status": _values(expected)}, updates
        )
        return rc == 1

    def active_count(self, actor: Optional[str], session: Optional[DbSession] = None) -> int:
        """
        Pending and processing executions owned by ``actor``.

        Given a session, the count is a locking read inside that transaction,
        so a caller can check and insert under the same lock.
        """
        stmt = select(func.count()).select_from(executions).where(
            executions.c.status.in_(_ACTIVE_STATUSES)
        )
        stmt = stmt.where(executions.c.actor.is_(None) if actor is None else executions.c.actor == actor)
        if session is not None:
            return int(session.execute_scalar(stmt.with_for_update()) or 0)
        with DbSession(self.engine) as session:
            return int(session.execute_scalar(stmt) or 0)

    def list_scheduled(self, actor: Optional[str] = None, *, until: Optional[datetime] = None) -> list[Execution]:
        stmt = select(executions).where(executions.c.status == ExecutionStatus.SCHEDULED.value)
        if actor is not None:
            stmt = stmt.where(executions.c.actor == actor)
        if until is not None:
            stmt = stmt.where(executions.c.scheduled_for <= until)
        stmt = stmt.order_by(executions.c.scheduled_for, executions.c.id)
        with DbSession(self.engine) as session:
            return [Execution.from_row(r) for r in session.fetch_all(stmt)]

    def list_due(self, now: datetime) -> list[str]:
        stmt = (
            select(executions.c.id)
            .where(
                and_(
                    executions.c.status == ExecutionStatus.SCHEDULED.value,
                    executions.c.scheduled_for <= now,
                )
            )
            .order_by(executions.c.scheduled_for, executions.c.id)
        )
        with DbSession(self.engine) as session:
            return [r["id"] for r in session.fetch_all(stmt)]

    def list_expired_undo(self, now: datetime) -> list[str]:
        stmt = select(executions.c.id).where(
            and_(
                executions.c.undo_enabled.is_(True),
                executions.c.undo_expires_at <= now,
            )
        )
        with DbSession(self.engine) as session:
            return [r["id"] for r in session.fetch_all(stmt)]

    def delete_finished_before(self, cutoff: datetime) -> int:
        """
        Remove terminal executions older than ``cutoff`` that are no longer
        undo-eligible. Batches and snapshots go with them.
        """
        cond = and_(
            executions.c.status.in_(_values(TERMINAL_STATUSES)),
            executions.c.updated_at < cutoff,
            executions.c.undo_enabled.is_(False),
        )
        with DbSession(self.engine) as session:
            ids = [r["id"] for r in session.fetch_all(select(executions.c.id).where(cond))]
            if not ids:
                return 0
            # explicit child deletes; ON DELETE CASCADE is not enforced everywhere
            session.execute(delete(snapshots).where(snapshots.c.execution_id.in_(ids)))
            session.execute(delete(batches).where(batches.c.execution_id.in_(ids)))
            removed = session.execute(delete(executions).where(executions.c.id.in_(ids)))
        logger.info("removed %d finished executions older than %s", removed, cutoff.isoformat())
        return removed

    def discard(self, execution_id: str) -> None:
        """Delete an execution that never started, with its batches and snapshots."""
        with DbSession(self.engine) as session:
            session.execute(delete(snapshots).where(snapshots.c.execution_id == execution_id))
            session.execute(delete(batches).where(batches.c.execution_id == execution_id))
            session.execute(delete(executions).where(executions.c.id == execution_id))
        logger.info("discarded execution %s", execution_id)

    # ------------------------------------------------------------------
    # batches
    # ------------------------------------------------------------------

    def create_batch(self, session: DbSession, execution_id: str, sequence: int, record_ids: list) -> int:
        return session.insert(
            batches.insert().values(
                execution_id=execution_id,
                sequence=sequence,
                record_ids=list(record_ids),
                size=len(record_ids),
                position=0,
                processed_count=0,
                failed_count=0,
                failed_ids=[],
                status=BatchStatus.PENDING.value,
                attempts=0,
            )
        )

    def find_batch(self, session: DbSession, batch_id: int) -> Optional[Batch]:
        row = session.fetch_one(select(batches).where(batches.c.id == batch_id))
        return Batch.from_row(row) if row else None

    def list_batches(self, execution_id: str) -> list[Batch]:
        stmt = select(batches).where(batches.c.execution_id == execution_id).order_by(batches.c.sequence)
        with DbSession(self.engine) as session:
            return [Batch.from_row(r) for r in session.fetch_all(stmt)]

    def batch_tally(self, execution_id: str) -> dict[str, int]:
        stmt = (
            select(batches.c.status, func.count().label("n"))
            .where(batches.c.execution_id == execution_id)
            .group_by(batches.c.status)
        )
        with DbSession(self.engine) as session:
            rows = session.fetch_all(stmt)
        tally = {status.value: 0 for status in BatchStatus}
        for row in rows:
            tally[row["status"]] = int(row["n"])
        tally["total"] = sum(tally[status.value] for status in BatchStatus)
        return tally

    def outstanding_batches(self, session: DbSession, execution_id: str) -> int:
        stmt = select(func.count()).select_from(batches).where(
            and_(batches.c.execution_id == execution_id, batches.c.status.in_(_OPEN_BATCH_STATUSES))
        )
        return int(session.execute_scalar(stmt) or 0)

    def claim_batch(self, session: DbSession, batch_id: int) -> bool:
        """pending|processing -> processing, counting one more attempt."""
        rc = atomic_increment(
            session,
            batches,
            {"id": batch_id},
            {"attempts": 1},
            where=batches.c.status.in_(_OPEN_BATCH_STATUSES),
            also_set={
                "status": BatchStatus.PROCESSING.value,
                "started_at": func.coalesce(batches.c.started_at, self.clock()),
            },
        )
        return rc == 1

    def advance_batch(
        self,
        session: DbSession,
        batch_id: int,
        position: int,
        *,
        processed: int = 0,
        failed: int = 0,
        failed_ids: Optional[list] = None,
        error_detail: Optional[dict] = None,
    ) -> bool:
        """
        Move the batch cursor from ``position`` to ``position + 1`` and count
        the record's outcome, in the same statement.

        The cursor is the precondition: a record is counted at most once even
        if a redelivered message replays it.
        """
        also_set: dict[str, Any] = {"position": position + 1}
        if failed_ids is not None:
            also_set["failed_ids"] = failed_ids
        if error_detail is not None:
            also_set["error_detail"] = error_detail
        rc = atomic_increment(
            session,
            batches,
            {"id": batch_id},
            {"processed_count": processed, "failed_count": failed},
            where=and_(
                batches.c.position == position,
                batches.c.status == BatchStatus.PROCESSING.value,
            ),
            also_set=also_set,
        )
        return rc == 1

    def release_batch(self, session: DbSession, batch_id: int, error_detail: dict) -> bool:
        """processing -> pending, ready for a retry delivery."""
        rc = guarded_update(
            session,
            batches,
            {"id": batch_id},
            {"status": BatchStatus.PROCESSING.value},
            {"status": BatchStatus.PENDING.value, "error_detail": error_detail},
        )
        return rc == 1

    def finish_batch(
        self,
        session: DbSession,
        batch_id: int,
        status: BatchStatus,
        *,
        expected: Iterable[BatchStatus] = (BatchStatus.PENDING, BatchStatus.PROCESSING),
        extra_failed: int = 0,
        error_detail: Optional[dict] = None,
    ) -> bool:
        """
        Close an open batch. ``extra_failed`` counts records that were never
        attempted (exhausted retries) as failed.
        """
        also_set: dict[str, Any] = {"status": status.value, "completed_at": self.clock()}
        if error_detail is not None:
            also_set["error_detail"] = error_detail
        if extra_failed:
            also_set["position"] = batches.c.size
        rc = atomic_increment(
            session,
            batches,
            {"id": batch_id},
            {"failed_count": extra_failed},
            where=batches.c.status.in_(_values(expected)),
            also_set=also_set,
        )
        return rc == 1

