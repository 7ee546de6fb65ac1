from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol, Sequence, runtime_checkable

from ..errors import SpecInvalid
from ..models import MutationKind
from ..records import RecordStore


@runtime_checkable
class ActionHandler(Protocol):
    """
    A named mutation applied to one record at a time.

    ``execute`` runs inside the worker's per-record transaction and reports
    failure by raising (``RecordLevelFailure`` or anything else) or by
    returning ``False``. ``declare_undo_fields`` names the columns to snapshot
    before the mutation (``None`` means the whole row) and
    ``undo_operation_type`` says what kind of mutation ``execute`` performs,
    which decides how undo reverses it.
    """

    def execute(self, store: RecordStore, record: Mapping[str, Any], params: Mapping[str, Any]) -> Optional[bool]:
        ...

    def declare_undo_fields(self, store: RecordStore, params: Mapping[str, Any]) -> Optional[Sequence[str]]:
        ...

    def undo_operation_type(self, store: RecordStore, params: Mapping[str, Any]) -> MutationKind:
        ...


class ActionRegistry:
    """
    Name -> handler. Built explicitly and handed to the engine; there is no
    process-wide default instance.
    """

    def __init__(self, handlers: Optional[Mapping[str, ActionHandler]] = None) -> None:
        self._handlers: dict[str, ActionHandler] = {}
        for name, handler in (handlers or {}).items():
            self.register(name, handler)

    def register(self, name: str, handler: ActionHandler) -> None:
        if not name:
            raise ValueError("action name must not be empty")
        if not isinstance(handler, ActionHandler):
            raise TypeError(
                f"handler for {name!r} must implement execute, declare_undo_fields and undo_operation_type"
            )
        self._handlers[name] = handler

    def unregister(self, name: str) -> None:
        self._handlers.pop(name, None)

    def get(self, name: str) -> ActionHandler:
        try:
            return self._handlers[name]
        except KeyError:
            raise SpecInvalid(f"Unknown action {name!r}") from None

    def has(self, name: str) -> bool:
        return name in self._handlers

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def describe(self) -> list[dict[str, Any]]:
        return [
            {
                "name": name,
                "label": getattr(handler, "label", name.replace("_", " ").title()),
                "supports_undo": bool(getattr(handler, "supports_undo", True)),
            }
            for name, handler in sorted(self._handlers.items())
        ]

    def validate(self, name: str, store: RecordStore, params: Mapping[str, Any]) -> dict:
        """
        Resolve ``name`` and normalize ``params`` through the handler's optional
        ``validate_parameters``. Raises SpecInvalid.
        """
        handler = self.get(name)
        validate = getattr(handler, "validate_parameters", None)
        if validate is None:
            return dict(params)
        return dict(validate(store, params))
