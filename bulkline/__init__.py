from .engine import BulkActionEngine
from .models import ExecutionStatus, TargetSpec
from .records import EntityRegistry, EntityType

__all__ = ["BulkActionEngine", "EntityRegistry", "EntityType", "ExecutionStatus", "TargetSpec"]
