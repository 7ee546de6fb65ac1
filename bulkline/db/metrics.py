from __future__ import annotations

import re
from typing import Any

from sqlalchemy.sql import Delete, Insert, Update

from ..metrics.registry import (
    DB_WRITE_LATENCY_SECONDS,
    DB_WRITE_TOTAL,
)

_SQL_OP_RE = re.compile(
    r"^\s*(insert\s+into|update|delete\s+from)\s+`?([a-zA-Z_][a-zA-Z0-9_]*)`?",
    re.IGNORECASE,
)


def statement_target(sql: Any) -> tuple[str, str]:
    """
    Best-effort (table, op_type) extraction for metrics labels.

    Returns ("unknown", "unknown") for SELECTs and anything unrecognised.
    """
    if isinstance(sql, Insert):
        return sql.table.name, "insert"
    if isinstance(sql, Update):
        return sql.table.name, "update"
    if isinstance(sql, Delete):
        return sql.table.name, "delete"

    raw = sql if isinstance(sql, str) else getattr(sql, "text", None)
    if not isinstance(raw, str):
        return "unknown", "unknown"
    match = _SQL_OP_RE.match(raw)
    if match is None:
        return "unknown", "unknown"
    op = match.group(1).split()[0].lower()
    return match.group(2), op


def observe_db_write(table: str, op_type: str, status: str, latency_s: float) -> None:
    DB_WRITE_TOTAL.labels(table=table, op_type=op_type, status=status).inc()
    DB_WRITE_LATENCY_SECONDS.labels(table=table, op_type=op_type).observe(latency_s)
