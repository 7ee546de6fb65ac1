from __future__ import annotations

import re
from typing import Any, Mapping

from sqlalchemy import Table, and_, update
from sqlalchemy.sql import ColumnElement

from .session import DbSession

_IDENTIFIER_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


def validate_identifier(name: str, identifier_type: str = "identifier") -> str:
    """
    Validate that an identifier (table/column name) is safe to reference.

    Entity tables and filter columns are configured by the host application
    and reflected by name, so we restrict them to alphanumeric + underscore.

    ⚠️ SECURITY CONTRACT ⚠️
    Table names MUST come from trusted configuration. Column names inside
    filter predicates are additionally checked against the reflected table,
    so an unknown column never reaches SQL.

    Raises:
        TypeError: If identifier is not a string
        ValueError: If identifier contains unsafe characters or is invalid
    """
    if not isinstance(name, str):
        raise TypeError(f"{identifier_type} must be a string, got {type(name).__name__}")

    if not name:
        raise ValueError(f"{identifier_type} cannot be empty")

    if not _IDENTIFIER_RE.match(name):
        raise ValueError(
            f"Invalid {identifier_type} {name!r}: "
            "must start with letter/underscore and contain only alphanumeric characters and underscores"
        )

    if len(name) > 64:
        raise ValueError(f"{identifier_type} {name!r} exceeds the 64-character limit")

    return name


def _key_clause(table: Table, key: Mapping[str, Any]) -> list[ColumnElement]:
    if not key:
        raise ValueError("key must identify at least one column")
    return [table.c[col] == val for col, val in sorted(key.items())]


def atomic_increment(
    session: DbSession,
    table: Table,
    key: Mapping[str, Any],
    deltas: Mapping[str, int],
    *,
    where: ColumnElement | None = None,
    also_set: Mapping[str, Any] | None = None,
) -> int:
    """
    Add ``deltas`` to counter columns in a single UPDATE statement.

    ``UPDATE t SET c = c + :n WHERE key ...`` is evaluated by the database
    against the current row, so concurrent callers never lose each other's
    increments. Never read the counter, add in Python, and write it back.

    Args:
        session: Active DbSession instance
        table: Core table holding the counters
        key: column -> value identifying the row(s)
        deltas: counter column -> amount to add (zero deltas are skipped)
        where: optional extra guard (e.g. a status precondition)
        also_set: plain assignments applied in the same statement

    Returns:
        Affected row count. 0 means the row is missing or the guard failed.
    """
    values: dict[str, Any] = {
        col: table.c[col] + int(n) for col, n in sorted(deltas.items()) if n
    }
    if also_set:
        values.update(also_set)
    if not values:
        return 0

    clauses = _key_clause(table, key)
    if where is not None:
        clauses.append(where)
    stmt = update(table).where(and_(*clauses)).values(**values)
    return session.execute(stmt)


def guarded_update(
    session: DbSession,
    table: Table,
    key: Mapping[str, Any],
    expected: Mapping[str, Any],
    updates: Mapping[str, Any],
) -> int:
    """
    Compare-and-set: apply ``updates`` only if the row still holds ``expected``.

    This generalises version-column OCC to any precondition column (status,
    cursor position, undo flag). The write is accepted only when the current
    values match; otherwise it is a no-op.

    ``expected`` values may be a list/tuple/set, meaning "any of these".

    Returns:
        Affected row count:
        - 1: precondition held and the update was applied
        - 0: precondition failed (lost race), missing row, or no-op

    Example:

        rc = guarded_update(
            session,
            executions,
            {"id": execution_id},
            {"status": "scheduled"},
            {"status": "pending"},
        )
        if rc == 0:
            return  # someone else promoted it first
    """
    if not updates:
        return 0

    clauses = _key_clause(table, key)
    for col, val in sorted(expected.items()):
        if isinstance(val, (list, tuple, set, frozenset)):
            clauses.append(table.c[col].in_(list(val)))
        elif val is None:
            clauses.append(table.c[col].is_(None))
        else:
            clauses.append(table.c[col] == val)

    stmt = update(table).where(and_(*clauses)).values(**dict(updates))
    return session.execute(stmt)
