"""
Built-in actions: delete, restore, update and archive.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any, Mapping, Optional, Sequence

from ..errors import RecordLevelFailure, SpecInvalid
from ..models import MutationKind, utcnow
from ..records import RecordStore
from .registry import ActionRegistry


class DeleteAction:
    """Soft-delete when the entity supports it, otherwise (or with ``force``) remove the row."""

    label = "Delete"
    supports_undo = True

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self.clock = clock

    def _destroys(self, store: RecordStore, params: Mapping[str, Any]) -> bool:
        return bool(params.get("force")) or not store.entity.soft_deletes

    def validate_parameters(self, store: RecordStore, params: Mapping[str, Any]) -> dict:
        return {"force": bool(params.get("force", False))}

    def execute(self, store: RecordStore, record: Mapping[str, Any], params: Mapping[str, Any]) -> bool:
        record_id = record[store.entity.id_column]
        if self._destroys(store, params):
            return store.destroy(record_id) == 1
        if store.is_deleted(record):
            raise RecordLevelFailure(f"record {record_id!r} is already deleted")
        return store.soft_delete(record_id, self.clock()) == 1

    def declare_undo_fields(self, store: RecordStore, params: Mapping[str, Any]) -> Optional[Sequence[str]]:
        if self._destroys(store, params):
            return None
        return [store.entity.soft_delete_column]

    def undo_operation_type(self, store: RecordStore, params: Mapping[str, Any]) -> MutationKind:
        return MutationKind.DESTROY if self._destroys(store, params) else MutationKind.DELETE


class RestoreAction:
    """Clear the soft-delete marker."""

    label = "Restore"
    supports_undo = True

    def validate_parameters(self, store: RecordStore, params: Mapping[str, Any]) -> dict:
        if not store.entity.soft_deletes:
            raise SpecInvalid(f"Entity {store.entity.name!r} does not support soft deletes")
        return {}

    def execute(self, store: RecordStore, record: Mapping[str, Any], params: Mapping[str, Any]) -> bool:
        record_id = record[store.entity.id_column]
        if not store.is_deleted(record):
            raise RecordLevelFailure(f"record {record_id!r} is not deleted")
        return store.reinstate(record_id) == 1

    def declare_undo_fields(self, store: RecordStore, params: Mapping[str, Any]) -> Sequence[str]:
        return [store.entity.soft_delete_column]

    def undo_operation_type(self, store: RecordStore, params: Mapping[str, Any]) -> MutationKind:
        return MutationKind.REINSTATE


class UpdateAction:
    """Set the columns given in ``params["data"]``."""

    label = "Update"
    supports_undo = True

    def validate_parameters(self, store: RecordStore, params: Mapping[str, Any]) -> dict:
        data = params.get("data")
        if not isinstance(data, Mapping) or not data:
            raise SpecInvalid("update requires a non-empty 'data' mapping")
        if store.entity.id_column in data:
            raise SpecInvalid(f"update must not change the id column {store.entity.id_column!r}")
        store.check_columns(data)
        return {"data": dict(data)}

    def execute(self, store: RecordStore, record: Mapping[str, Any], params: Mapping[str, Any]) -> bool:
        store.update(record[store.entity.id_column], params["data"])
        return True

    def declare_undo_fields(self, store: RecordStore, params: Mapping[str, Any]) -> Sequence[str]:
        return list(params["data"])

    def undo_operation_type(self, store: RecordStore, params: Mapping[str, Any]) -> MutationKind:
        return MutationKind.UPDATE


class ArchiveAction:
    """
    Stamp ``archive_column`` (default ``archived_at``) with the current time,
    and optionally write ``reason`` into ``reason_column``.
    """

    label = "Archive"
    supports_undo = True

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self.clock = clock

    def validate_parameters(self, store: RecordStore, params: Mapping[str, Any]) -> dict:
        out: dict = {"archive_column": params.get("archive_column", "archived_at")}
        if params.get("reason_column"):
            out["reason_column"] = params["reason_column"]
            out["reason"] = params.get("reason")
        store.check_columns(self.declare_undo_fields(store, out))
        return out

    def execute(self, store: RecordStore, record: Mapping[str, Any], params: Mapping[str, Any]) -> bool:
        fields: dict[str, Any] = {params["archive_column"]: self.clock()}
        if params.get("reason_column"):
            fields[params["reason_column"]] = params.get("reason")
        store.update(record[store.entity.id_column], fields)
        return True

    def declare_undo_fields(self, store: RecordStore, params: Mapping[str, Any]) -> Sequence[str]:
        fields = [params["archive_column"]]
        if params.get("reason_column"):
            fields.append(params["reason_column"])
        return fields

    def undo_operation_type(self, store: RecordStore, params: Mapping[str, Any]) -> MutationKind:
        return MutationKind.UPDATE


def default_registry(clock: Callable[[], datetime] = utcnow) -> ActionRegistry:
    return ActionRegistry(
        {
            "delete": DeleteAction(clock),
            "restore": RestoreAction(),
            "update": UpdateAction(),
            "archive": ArchiveAction(clock),
        }
    )
