from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional

from .errors import SpecInvalid


def utcnow() -> datetime:
    """Naive UTC timestamp; all persisted datetimes are naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ExecutionStatus(str, Enum):
    SCHEDULED = "scheduled"
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in (ExecutionStatus.PENDING, ExecutionStatus.PROCESSING)


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)

# scheduled -> pending -> processing -> {completed | failed | cancelled}
ALLOWED_TRANSITIONS: Mapping[ExecutionStatus, frozenset] = {
    ExecutionStatus.SCHEDULED: frozenset(
        {ExecutionStatus.PENDING, ExecutionStatus.CANCELLED, ExecutionStatus.FAILED}
    ),
    ExecutionStatus.PENDING: frozenset(
        {
            ExecutionStatus.PROCESSING,
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        }
    ),
    ExecutionStatus.PROCESSING: frozenset(
        {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
    ),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
}


def can_transition(current: ExecutionStatus, target: ExecutionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class BatchStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.CANCELLED)


class UndoOperation(str, Enum):
    REINSTATE_DELETED = "reinstate_deleted"
    DELETE_AGAIN = "delete_again"
    REVERT_FIELDS = "revert_fields"
    RECREATE = "recreate"


class MutationKind(str, Enum):
    """What a handler did to a record; determines how undo reverses it."""

    DELETE = "delete"
    REINSTATE = "reinstate"
    UPDATE = "update"
    DESTROY = "destroy"


@dataclass
class Execution:
    id: str
    entity_type: str
    filter_spec: dict
    action_name: str
    parameters: dict
    batch_size: int
    total_records: int
    processed_records: int
    failed_records: int
    status: ExecutionStatus
    actor: Optional[str] = None
    undo_enabled: bool = False
    undo_expires_at: Optional[datetime] = None
    undone_at: Optional[datetime] = None
    undone_by: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_detail: Optional[dict] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Execution":
        return cls(
            id=row["id"],
            entity_type=row["entity_type"],
            filter_spec=row["filter_spec"] or {},
            action_name=row["action_name"],
            parameters=row["parameters"] or {},
            batch_size=int(row["batch_size"]),
            total_records=int(row["total_records"]),
            processed_records=int(row["processed_records"]),
            failed_records=int(row["failed_records"]),
            status=ExecutionStatus(row["status"]),
            actor=row["actor"],
            undo_enabled=bool(row["undo_enabled"]),
            undo_expires_at=row["undo_expires_at"],
            undone_at=row["undone_at"],
            undone_by=row["undone_by"],
            scheduled_for=row["scheduled_for"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            error_detail=row["error_detail"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def remaining_records(self) -> int:
        return max(0, self.total_records - self.processed_records - self.failed_records)


@dataclass
class Batch:
    id: int
    execution_id: str
    sequence: int
    record_ids: list
    size: int
    position: int
    processed_count: int
    failed_count: int
    failed_ids: list
    status: BatchStatus
    attempts: int
    error_detail: Optional[dict] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Batch":
        return cls(
            id=int(row["id"]),
            execution_id=row["execution_id"],
            sequence=int(row["sequence"]),
            record_ids=list(row["record_ids"] or []),
            size=int(row["size"]),
            position=int(row["position"]),
            processed_count=int(row["processed_count"]),
            failed_count=int(row["failed_count"]),
            failed_ids=list(row["failed_ids"] or []),
            status=BatchStatus(row["status"]),
            attempts=int(row["attempts"]),
            error_detail=row["error_detail"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )

    @property
    def remaining_ids(self) -> list:
        return self.record_ids[self.position:]


@dataclass
class SnapshotRecord:
    id: int
    execution_id: str
    entity_type: str
    target_id: Any
    undo_operation: UndoOperation
    fields: dict
    undone: bool = False
    undone_at: Optional[datetime] = None
    undone_by: Optional[str] = None
    created_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Filter specs
# ---------------------------------------------------------------------------


class FilterOp(str, Enum):
    EQ = "eq"
    LT = "lt"
    GT = "gt"
    IN = "in"
    NOT_IN = "notIn"
    BETWEEN = "between"
    IS_NULL = "isNull"
    IS_NOT_NULL = "isNotNull"


_VALUELESS_OPS = (FilterOp.IS_NULL, FilterOp.IS_NOT_NULL)
_LIST_OPS = (FilterOp.IN, FilterOp.NOT_IN)


@dataclass(frozen=True)
class Predicate:
    column: str
    op: FilterOp
    value: Any = None

    @classmethod
    def parse(cls, raw: Mapping[str, Any]) -> "Predicate":
        if not isinstance(raw, Mapping):
            raise SpecInvalid(f"Predicate must be a mapping, got {type(raw).__name__}")
        column = raw.get("column")
        if not isinstance(column, str) or not column:
            raise SpecInvalid("Predicate requires a non-empty 'column'")
        try:
            op = FilterOp(raw.get("op", "eq"))
        except ValueError:
            raise SpecInvalid(f"Unsupported operator {raw.get('op')!r} on column {column!r}") from None

        value = raw.get("value")
        if op in _VALUELESS_OPS:
            value = None
        elif op in _LIST_OPS:
            if not isinstance(value, (list, tuple)) or not value:
                raise SpecInvalid(f"Operator {op.value!r} requires a non-empty list value")
            value = tuple(value)
        elif op is FilterOp.BETWEEN:
            if not isinstance(value, (list, tuple)) or len(value) != 2:
                raise SpecInvalid("Operator 'between' requires a [low, high] value")
            value = tuple(value)
        elif value is None:
            raise SpecInvalid(f"Operator {op.value!r} requires a value; use isNull for NULL checks")
        return cls(column=column, op=op, value=value)

    def to_dict(self) -> dict:
        out: dict = {"column": self.column, "op": self.op.value}
        if self.op not in _VALUELESS_OPS:
            out["value"] = list(self.value) if isinstance(self.value, tuple) else self.value
        return out


@dataclass(frozen=True)
class FilterSpec:
    """
    One of three forms: explicit ids, a predicate list, or "all".

    Serialized form (stored on the execution row and re-resolved by the
    scheduler): ``{"ids": [...]}``, ``{"where": [...]}`` or ``{"all": true}``,
    each optionally with ``"include_deleted": true``.
    """

    ids: Optional[tuple] = None
    where: tuple = ()
    match_all: bool = False
    include_deleted: bool = False

    @classmethod
    def parse(cls, raw: Any) -> "FilterSpec":
        if isinstance(raw, FilterSpec):
            return raw
        if not isinstance(raw, Mapping):
            raise SpecInvalid("Filter spec must be a mapping")
        include_deleted = bool(raw.get("include_deleted", False))
        forms = [k for k in ("ids", "where", "all") if raw.get(k) not in (None, False)]
        if len(forms) != 1:
            raise SpecInvalid("Filter spec must contain exactly one of 'ids', 'where' or 'all'")

        form = forms[0]
        if form == "ids":
            ids = raw["ids"]
            if not isinstance(ids, (list, tuple)):
                raise SpecInvalid("'ids' must be a list")
            if not ids:
                raise SpecInvalid("'ids' must not be empty")
            # dedupe, keep first-seen order
            return cls(ids=tuple(dict.fromkeys(ids)), include_deleted=include_deleted)
        if form == "where":
            where = raw["where"]
            if not isinstance(where, (list, tuple)) or not where:
                raise SpecInvalid("'where' must be a non-empty list of predicates")
            return cls(
                where=tuple(Predicate.parse(p) for p in where),
                include_deleted=include_deleted,
            )
        if raw["all"] is not True:
            raise SpecInvalid("'all' must be true")
        return cls(match_all=True, include_deleted=include_deleted)

    def to_dict(self) -> dict:
        out: dict
        if self.ids is not None:
            out = {"ids": list(self.ids)}
        elif self.where:
            out = {"where": [p.to_dict() for p in self.where]}
        else:
            out = {"all": True}
        if self.include_deleted:
            out["include_deleted"] = True
        return out


@dataclass
class TargetSpec:
    """Everything a caller submits to start (or schedule) an execution."""

    entity_type: str
    action: str
    filter: Any
    parameters: dict = field(default_factory=dict)
    actor: Optional[str] = None
    batch_size: Optional[int] = None
    undo: bool = False
    undo_expiry_days: Optional[int] = None
    scheduled_for: Optional[datetime] = None


@dataclass
class PreviewResult:
    total: int
    sample_ids: list
    sample: list

    @property
    def truncated(self) -> bool:
        return self.total > len(self.sample_ids)


@dataclass
class ExecutionStatusView:
    execution: Execution
    progress_percentage: float
    estimated_seconds_remaining: Optional[float]
    batches: dict
    elapsed_seconds: Optional[float]

    def to_dict(self) -> dict:
        ex = self.execution
        return {
            "id": ex.id,
            "status": ex.status.value,
            "entity_type": ex.entity_type,
            "action": ex.action_name,
            "total_records": ex.total_records,
            "processed_records": ex.processed_records,
            "failed_records": ex.failed_records,
            "progress_percentage": self.progress_percentage,
            "estimated_seconds_remaining": self.estimated_seconds_remaining,
            "batches": dict(self.batches),
            "elapsed_seconds": self.elapsed_seconds,
            "undo_enabled": ex.undo_enabled,
            "undo_expires_at": ex.undo_expires_at.isoformat() if ex.undo_expires_at else None,
            "error_detail": ex.error_detail,
        }
