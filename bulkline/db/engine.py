from __future__ import annotations

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine

from ..config import DbConfig


def create_db_engine(config: DbConfig) -> Engine:
    """
    Build an Engine for the ledger database.

    MySQL/Postgres engines get ``pool_pre_ping``. SQLite engines get a busy
    timeout and take the write lock at BEGIN so that concurrent workers queue
    up instead of failing on a read-to-write lock upgrade.
    """
    if config.url.startswith("sqlite"):
        engine = create_engine(
            config.url,
            echo=config.echo,
            connect_args={"timeout": config.busy_timeout_s, "check_same_thread": False},
        )
        _install_sqlite_immediate_transactions(engine)
        return engine

    return create_engine(config.url, echo=config.echo, pool_pre_ping=True)


def _install_sqlite_immediate_transactions(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # hand transaction control to SQLAlchemy
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
