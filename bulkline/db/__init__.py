from .engine import create_db_engine
from .helpers import atomic_increment, guarded_update, validate_identifier
from .schema import batches, create_schema, drop_schema, executions, metadata, snapshots
from .session import DbSession

__all__ = [
    "DbSession",
    "create_db_engine",
    "create_schema",
    "drop_schema",
    "metadata",
    "executions",
    "batches",
    "snapshots",
    "atomic_increment",
    "guarded_update",
    "validate_identifier",
]
