from .builtin import ArchiveAction, DeleteAction, RestoreAction, UpdateAction, default_registry
from .registry import ActionHandler, ActionRegistry

__all__ = [
    "ActionHandler",
    "ActionRegistry",
    "ArchiveAction",
    "DeleteAction",
    "RestoreAction",
    "UpdateAction",
    "default_registry",
]
