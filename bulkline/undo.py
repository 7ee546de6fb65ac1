"""
Snapshot capture and one-shot, time-limited undo.

A snapshot stores the pre-mutation values of the fields an action declares
(or the whole row for destructive actions), keyed by (execution, target id).
Undo claims the execution's undo flag with a compare-and-set before touching
any record, so two concurrent undo calls can never both restore.

Restoration is best-effort: one record failing to restore is logged, noted on
its snapshot row, and the rest carry on. Forward processing has its own,
stricter policy (``EngineConfig.stop_on_record_error``); the two are kept
separate on purpose.
"""

from __future__ import annotations

import base64
import json
import logging
import zlib
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Mapping, Optional, Sequence

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.engine import Engine

from .config import EngineConfig
from .db.helpers import guarded_update
from .db.schema import executions, snapshots
from .db.session import DbSession
from .errors import RecordLevelFailure, UndoReason, UndoUnavailable
from .events import EXECUTION_UNDONE, EventSink, emit_safely
from .ledger import ExecutionLedger
from .metrics.registry import UNDO_RECORDS_TOTAL
from .models import (
    Execution,
    ExecutionStatus,
    MutationKind,
    SnapshotRecord,
    UndoOperation,
    utcnow,
)
from .records import EntityRegistry, RecordStore

logger = logging.getLogger(__name__)

_UNDO_FOR = {
    MutationKind.DELETE: UndoOperation.REINSTATE_DELETED,
    MutationKind.REINSTATE: UndoOperation.DELETE_AGAIN,
    MutationKind.UPDATE: UndoOperation.REVERT_FIELDS,
    MutationKind.DESTROY: UndoOperation.RECREATE,
}

_SNAPSHOT_PAGE = 500


def undo_operation_for(kind: MutationKind) -> UndoOperation:
    return _UNDO_FOR[MutationKind(kind)]


# ---------------------------------------------------------------------------
# payload codec
# ---------------------------------------------------------------------------


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return {"__datetime__": value.isoformat()}
    if isinstance(value, date):
        return {"__date__": value.isoformat()}
    if isinstance(value, Decimal):
        return {"__decimal__": str(value)}
    if isinstance(value, (bytes, bytearray)):
        return {"__bytes__": base64.b64encode(bytes(value)).decode("ascii")}
    raise TypeError(f"Cannot snapshot value of type {type(value).__name__}")


def _json_object_hook(obj: dict) -> Any:
    if len(obj) == 1:
        (tag, raw), = obj.items()
        if tag == "__datetime__":
            return datetime.fromisoformat(raw)
        if tag == "__date__":
            return date.fromisoformat(raw)
        if tag == "__decimal__":
            return Decimal(raw)
        if tag == "__bytes__":
            return base64.b64decode(raw)
    return obj


def encode_payload(data: Mapping[str, Any], *, compress: bool) -> bytes:
    raw = json.dumps(dict(data), default=_json_default, sort_keys=True).encode("utf-8")
    return zlib.compress(raw) if compress else raw


def decode_payload(blob: bytes, *, compressed: bool) -> dict:
    raw = zlib.decompress(blob) if compressed else blob
    return json.loads(raw.decode("utf-8"), object_hook=_json_object_hook)


def target_key(record_id: Any) -> str:
    return json.dumps(record_id, default=_json_default)


@dataclass
class UndoResult:
    execution_id: str
    restored: int
    failed: int

    @property
    def total(self) -> int:
        return self.restored + self.failed


class UndoManager:
    def __init__(
        self,
        engine: Engine,
        ledger: ExecutionLedger,
        entities: EntityRegistry,
        events: EventSink,
        config: EngineConfig,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.ledger = ledger
        self.entities = entities
        self.events = events
        self.config = config
        self.clock = clock

    # ------------------------------------------------------------------
    # capture
    # ------------------------------------------------------------------

    def capture_snapshot(
        self,
        session: DbSession,
        execution: Execution,
        store: RecordStore,
        record: Mapping[str, Any],
        kind: MutationKind,
        fields: Optional[Sequence[str]] = None,
    ) -> bool:
        """
        Store the pre-mutation state of ``record`` in the caller's transaction.

        ``fields=None`` captures the full row. Returns False when a snapshot
        for this (execution, record) already exists; the earliest capture is
        the one that holds the true pre-mutation values.
        """
        record_id = record[store.entity.id_column]
        key = target_key(record_id)
        exists = session.execute_scalar(
            select(snapshots.c.id).where(
                and_(snapshots.c.execution_id == execution.id, snapshots.c.target_key == key)
            )
        )
        if exists is not None:
            return False

        if fields is None:
            captured = dict(record)
        else:
            store.check_columns(fields)
            captured = {name: record.get(name) for name in fields}

        compress = self.config.compress_snapshots
        session.insert(
            snapshots.insert().values(
                execution_id=execution.id,
                entity_type=execution.entity_type,
                target_key=key,
                undo_operation=undo_operation_for(kind).value,
                payload=encode_payload({"id": record_id, "fields": captured}, compress=compress),
                compressed=compress,
                undone=False,
                created_at=self.clock(),
            )
        )
        return True

    def load_snapshot(self, row: Mapping[str, Any]) -> SnapshotRecord:
        body = decode_payload(row["payload"], compressed=bool(row["compressed"]))
        return SnapshotRecord(
            id=int(row["id"]),
            execution_id=row["execution_id"],
            entity_type=row["entity_type"],
            target_id=body["id"],
            undo_operation=UndoOperation(row["undo_operation"]),
            fields=body["fields"],
            undone=bool(row["undone"]),
            undone_at=row["undone_at"],
            undone_by=row["undone_by"],
            created_at=row["created_at"],
        )

    def iter_snapshots(self, execution_id: str, *, pending_only: bool = True) -> Iterator[SnapshotRecord]:
        """Page through an execution's snapshots by id."""
        last_id = 0
        while True:
            stmt = select(snapshots).where(
                and_(snapshots.c.execution_id == execution_id, snapshots.c.id > last_id)
            )
            if pending_only:
                stmt = stmt.where(snapshots.c.undone.is_(False))
            stmt = stmt.order_by(snapshots.c.id).limit(_SNAPSHOT_PAGE)
            with DbSession(self.engine) as session:
                rows = session.fetch_all(stmt)
            for row in rows:
                yield self.load_snapshot(row)
            if len(rows) < _SNAPSHOT_PAGE:
                return
            last_id = int(rows[-1]["id"])

    # ------------------------------------------------------------------
    # eligibility
    # ------------------------------------------------------------------

    def get_undoable_count(self, execution_id: str) -> int:
        stmt = select(func.count()).select_from(snapshots).where(
            and_(snapshots.c.execution_id == execution_id, snapshots.c.undone.is_(False))
        )
        with DbSession(self.engine) as session:
            return int(session.execute_scalar(stmt) or 0)

    def unavailable_reason(self, execution: Execution) -> Optional[UndoReason]:
        if execution.undone_at is not None:
            return UndoReason.ALREADY_UNDONE
        if execution.undo_expires_at is None:
            return UndoReason.NEVER_ENABLED
        if execution.undo_expires_at <= self.clock():
            return UndoReason.EXPIRED
        if not execution.undo_enabled:
            return UndoReason.NEVER_ENABLED
        if execution.status is not ExecutionStatus.COMPLETED:
            return UndoReason.NOT_COMPLETED
        if self.get_undoable_count(execution.id) == 0:
            return UndoReason.NOTHING_TO_UNDO
        return None

    def can_undo(self, execution: Execution) -> bool:
        return self.unavailable_reason(execution) is None

    def get_time_remaining(self, execution: Execution) -> Optional[timedelta]:
        """Time left in the undo window; None when undo is not (or no longer) possible."""
        if not execution.undo_enabled or execution.undo_expires_at is None:
            return None
        remaining = execution.undo_expires_at - self.clock()
        if remaining <= timedelta(0):
            return None
        return remaining

    # ------------------------------------------------------------------
    # undo
    # ------------------------------------------------------------------

    def undo(self, execution_id: str, actor: Optional[str] = None) -> UndoResult:
        execution = self.ledger.get(execution_id)
        reason = self.unavailable_reason(execution)
        if reason is not None:
            raise UndoUnavailable(reason)

        now = self.clock()
        with DbSession(self.engine) as session:
            claimed = guarded_update(
                session,
                executions,
                {"id": execution_id},
                {
                    "undo_enabled": True,
                    "undone_at": None,
                    "status": ExecutionStatus.COMPLETED.value,
                },
                {"undo_enabled": False, "undone_at": now, "undone_by": actor, "updated_at": now},
            )
        if claimed != 1:
            raise UndoUnavailable(UndoReason.ALREADY_UNDONE)

        logger.info("undo started for execution %s by %s", execution_id, actor)
        restored = failed = 0
        for snapshot in self.iter_snapshots(execution_id):
            if self._restore_one(snapshot, actor):
                restored += 1
            else:
                failed += 1

        result = UndoResult(execution_id, restored, failed)
        logger.info(
            "undo finished for execution %s: %d restored, %d failed", execution_id, restored, failed
        )
        emit_safely(
            self.events,
            EXECUTION_UNDONE,
            {"id": execution_id, "actor": actor, "restored": restored, "failed": failed},
        )
        return result

    def _restore_one(self, snapshot: SnapshotRecord, actor: Optional[str]) -> bool:
        try:
            with DbSession(self.engine) as session:
                store = self.entities.store(session, snapshot.entity_type)
                self._apply(store, snapshot)
                rc = guarded_update(
                    session,
                    snapshots,
                    {"id": snapshot.id},
                    {"undone": False},
                    {"undone": True, "undone_at": self.clock(), "undone_by": actor, "error": None},
                )
                if rc != 1:
                    raise RecordLevelFailure(f"snapshot {snapshot.id} was restored concurrently")
        except Exception as exc:
            logger.warning(
                "undo of %s %r (execution %s) failed: %s",
                snapshot.entity_type,
                snapshot.target_id,
                snapshot.execution_id,
                exc,
            )
            with DbSession(self.engine) as session:
                session.execute(
                    update(snapshots).where(snapshots.c.id == snapshot.id).values(error=str(exc)[:1000])
                )
            UNDO_RECORDS_TOTAL.labels(outcome="failed").inc()
            return False
        UNDO_RECORDS_TOTAL.labels(outcome="restored").inc()
        return True

    def _apply(self, store: RecordStore, snapshot: SnapshotRecord) -> None:
        if snapshot.undo_operation is UndoOperation.RECREATE:
            store.insert(snapshot.fields)
            return
        if store.update(snapshot.target_id, snapshot.fields) != 1:
            raise RecordLevelFailure(f"record {snapshot.target_id!r} no longer exists")

    # ------------------------------------------------------------------
    # retention
    # ------------------------------------------------------------------

    def purge_expired(self) -> int:
        """
        Close the undo window of every expired execution and drop its
        pending snapshots. Returns the number of snapshots removed.
        """
        removed = 0
        for execution_id in self.ledger.list_expired_undo(self.clock()):
            with DbSession(self.engine) as session:
                closed = guarded_update(
                    session,
                    executions,
                    {"id": execution_id},
                    {"undo_enabled": True},
                    {"undo_enabled": False, "updated_at": self.clock()},
                )
                if not closed:
                    continue
                removed += session.execute(
                    delete(snapshots).where(
                        and_(snapshots.c.execution_id == execution_id, snapshots.c.undone.is_(False))
                    )
                )
        if removed:
            logger.info("purged %d expired snapshots", removed)
        return removed
