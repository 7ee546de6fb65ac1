from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any, Mapping, Union

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.sql import Executable

from .metrics import observe_db_write, statement_target

logger = logging.getLogger(__name__)

Statement = Union[str, Executable]


class DbSession:
    """
    Transactional wrapper around a SQLAlchemy Engine connection.

    Accepts raw SQL strings (wrapped in ``text()``) or Core executables
    (``select(...)``, ``update(...)``, ...). Commits on clean exit, rolls
    back on exception.

    Callbacks registered with ``after_commit`` run only once the transaction
    has committed. They are for non-authoritative side effects (cache
    checkpoints, notifications): a failing callback is logged and does not
    undo or re-raise over the committed write.

    Use as:
        with DbSession(engine) as session:
            session.execute(...)
            row = session.fetch_one(...)
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._conn: Connection | None = None
        self._tx = None
        self._after_commit: list[Callable[[], None]] = []

    def __enter__(self) -> "DbSession":
        if self._conn is not None:
            raise RuntimeError("DbSession is already active; nested sessions are not allowed")
        self._conn = self.engine.connect()
        self._tx = self._conn.begin()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        committed = False
        callbacks, self._after_commit = self._after_commit, []
        try:
            if self._tx is not None:
                if exc_type:
                    self._tx.rollback()
                else:
                    self._tx.commit()
                    committed = True
        finally:
            if self._conn is not None:
                self._conn.close()

            self._conn = None
            self._tx = None

        if committed:
            for callback in callbacks:
                try:
                    callback()
                except Exception:
                    logger.exception("after_commit callback %r failed", callback)

        # propagate exceptions (if any)
        return False

    @property
    def active(self) -> bool:
        return self._conn is not None

    @property
    def connection(self) -> Connection:
        return self._connection()

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    def _connection(self) -> Connection:
        if self._conn is None:
            raise RuntimeError("DbSession is not active; use within a context manager")
        return self._conn

    def after_commit(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` after this transaction commits. Dropped on rollback."""
        self._connection()
        self._after_commit.append(callback)

    def _run(self, sql: Statement, params: Mapping[str, Any] | None):
        conn = self._connection()
        stmt = text(sql) if isinstance(sql, str) else sql
        if params:
            return conn.execute(stmt, dict(params))
        return conn.execute(stmt)

    def execute(
        self,
        sql: Statement,
        params: Mapping[str, Any] | None = None,
    ) -> int:
        """
        Execute a non-SELECT statement and return affected row count.
        """
        start = time.monotonic()
        table, op_type = statement_target(sql)
        status = "success"
        try:
            result = self._run(sql, params)
            if result.rowcount is None:
                raise RuntimeError(
                    "execute() received None rowcount for statement. "
                    "This may indicate a DDL statement or unsupported operation type."
                )
            return int(result.rowcount)
        except Exception:
            status = "error"
            raise
        finally:
            if op_type != "unknown":
                observe_db_write(table, op_type, status, time.monotonic() - start)

    def insert(self, stmt: Executable, params: Mapping[str, Any] | None = None) -> Any:
        """
        Execute a Core INSERT and return the new row's primary key (first column).
        """
        start = time.monotonic()
        table, _ = statement_target(stmt)
        status = "success"
        try:
            result = self._run(stmt, params)
            pk = result.inserted_primary_key
            return pk[0] if pk else None
        except Exception:
            status = "error"
            raise
        finally:
            observe_db_write(table, "insert", status, time.monotonic() - start)

    def execute_scalar(
        self,
        sql: Statement,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        """
        Execute a statement expected to return a single scalar value.
        """
        return self._run(sql, params).scalar_one_or_none()

    def fetch_one(
        self,
        sql: Statement,
        params: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """
        Execute a SELECT expected to return 0 or 1 row. Raises if more than one row.
        """
        row = self._run(sql, params).mappings().one_or_none()
        if row is None:
            return None
        return dict(row)

    def fetch_all(
        self,
        sql: Statement,
        params: Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """
        Execute a SELECT expected to return multiple rows.
        """
        return [dict(row) for row in self._run(sql, params).mappings()]
