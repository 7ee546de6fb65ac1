"""
SQLAlchemy Core table definitions for the execution ledger.

Table names are fixed; target record tables belong to the host application
and are described with ``bulkline.records.EntityType`` instead.
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.engine import Engine

metadata = MetaData()

executions = Table(
    "bulk_executions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("entity_type", String(64), nullable=False),
    Column("filter_spec", JSON, nullable=False),
    Column("action_name", String(64), nullable=False),
    Column("parameters", JSON, nullable=True),
    Column("batch_size", Integer, nullable=False),
    Column("total_records", Integer, nullable=False, default=0),
    Column("processed_records", Integer, nullable=False, default=0),
    Column("failed_records", Integer, nullable=False, default=0),
    Column("status", String(16), nullable=False),
    Column("actor", String(128), nullable=True),
    Column("undo_enabled", Boolean, nullable=False, default=False),
    Column("undo_expires_at", DateTime, nullable=True),
    Column("undone_at", DateTime, nullable=True),
    Column("undone_by", String(128), nullable=True),
    Column("scheduled_for", DateTime, nullable=True),
    Column("started_at", DateTime, nullable=True),
    Column("completed_at", DateTime, nullable=True),
    Column("error_detail", JSON, nullable=True),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    Index("ix_bulk_executions_actor_status", "actor", "status"),
    Index("ix_bulk_executions_status_scheduled", "status", "scheduled_for"),
    Index("ix_bulk_executions_undo", "undo_enabled", "undo_expires_at"),
)

batches = Table(
    "bulk_batches",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "execution_id",
        String(36),
        ForeignKey("bulk_executions.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("sequence", Integer, nullable=False),
    Column("record_ids", JSON, nullable=False),
    Column("size", Integer, nullable=False),
    Column("position", Integer, nullable=False, default=0),
    Column("processed_count", Integer, nullable=False, default=0),
    Column("failed_count", Integer, nullable=False, default=0),
    Column("failed_ids", JSON, nullable=True),
    Column("status", String(16), nullable=False),
    Column("attempts", Integer, nullable=False, default=0),
    Column("error_detail", JSON, nullable=True),
    Column("started_at", DateTime, nullable=True),
    Column("completed_at", DateTime, nullable=True),
    UniqueConstraint("execution_id", "sequence", name="uq_bulk_batches_execution_sequence"),
    Index("ix_bulk_batches_execution_status", "execution_id", "status"),
)

snapshots = Table(
    "bulk_snapshots",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "execution_id",
        String(36),
        ForeignKey("bulk_executions.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("entity_type", String(64), nullable=False),
    # JSON-encoded target id so int and str keys share one unique index
    Column("target_key", String(191), nullable=False),
    Column("undo_operation", String(32), nullable=False),
    Column("payload", LargeBinary, nullable=False),
    Column("compressed", Boolean, nullable=False, default=False),
    Column("undone", Boolean, nullable=False, default=False),
    Column("undone_at", DateTime, nullable=True),
    Column("undone_by", String(128), nullable=True),
    Column("error", Text, nullable=True),
    Column("created_at", DateTime, nullable=False),
    UniqueConstraint("execution_id", "target_key", name="uq_bulk_snapshots_execution_target"),
    Index("ix_bulk_snapshots_execution_undone", "execution_id", "undone"),
)


def create_schema(engine: Engine) -> None:
    metadata.create_all(engine)


def drop_schema(engine: Engine) -> None:
    metadata.drop_all(engine)
