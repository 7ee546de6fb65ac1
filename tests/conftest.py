from __future__ import annotations

import os
import re
import uuid
from collections.abc import Callable, Iterator
from typing import Any, Optional

import pytest
from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, delete, insert
from sqlalchemy.engine import Engine

from bulkline.actions import default_registry
from bulkline.cache import MemoryCache
from bulkline.config import DbConfig, EngineConfig
from bulkline.db import batches, create_db_engine, create_schema, executions, snapshots
from bulkline.engine import BulkActionEngine
from bulkline.events import RecordingEventSink
from bulkline.queue import LocalQueue
from bulkline.records import EntityRegistry, EntityType

from ._support import FakeClock, widget_rows


def _markexpr_allows(config: pytest.Config, marker_name: str) -> bool:
    """
    Return True if the user's `-m` expression *mentions* marker_name.

    A lightweight heuristic: we only need to know whether the user intended
    to run concurrency/redis tests at all.
    """
    expr = getattr(config.option, "markexpr", "") or ""
    return marker_name in expr


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """
    Skip concurrency tests unless selected with `-m concurrency`.
    Skip tests needing a live Redis unless selected with `-m redis`.
    """
    skips = {
        "concurrency": pytest.mark.skip(
            reason="Skipped: run with `pytest -m concurrency` to execute concurrency invariant tests."
        ),
        "redis": pytest.mark.skip(
            reason="Skipped: run with `pytest -m redis` against a live Redis server."
        ),
    }
    allowed = {name: _markexpr_allows(config, name) for name in skips}
    for item in items:
        for name, skip in skips.items():
            if item.get_closest_marker(name) is not None and not allowed[name]:
                item.add_marker(skip)
                break


@pytest.fixture(scope="session")
def db_url(tmp_path_factory: pytest.TempPathFactory) -> str:
    """
    Database URL for tests.

    Set BULKLINE_TEST_DB_URL to run against MySQL; by default a per-session
    SQLite file is used.
    """
    url = os.environ.get("BULKLINE_TEST_DB_URL")
    if url:
        return url
    return f"sqlite:///{tmp_path_factory.mktemp('db') / 'bulkline.db'}"


@pytest.fixture(scope="session")
def engine(db_url: str) -> Iterator[Engine]:
    """
    Session-scoped engine with the ledger schema in place.

    We fail fast if the database is unreachable, so failures are actionable.
    """
    eng = create_db_engine(DbConfig(url=db_url))
    try:
        with eng.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
    except Exception as exc:  # pragma: no cover
        pytest.fail(
            "Test database is not reachable.\n"
            f"- BULKLINE_TEST_DB_URL={db_url!r}\n"
            f"- Underlying error: {exc}",
            pytrace=False,
        )
    create_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def clean_ledger(engine: Engine) -> None:
    with engine.begin() as conn:
        conn.execute(delete(snapshots))
        conn.execute(delete(batches))
        conn.execute(delete(executions))


def _sanitize_table_name(name: str) -> str:
    name = re.sub(r"[^a-zA-Z0-9_]+", "_", name).strip("_").lower()
    if not name:
        name = "t"
    return name[:40]


@pytest.fixture
def widgets(engine: Engine, request: pytest.FixtureRequest) -> Iterator[str]:
    """
    A per-test target table:

    - `id` primary key (assigned by the tests)
    - `deleted_at` soft-delete marker
    - `archived_at` / `archive_reason` for the archive action
    """
    name = f"{_sanitize_table_name(f'w_{request.node.name}')}_{uuid.uuid4().hex[:8]}"
    table = Table(
        name,
        MetaData(),
        Column("id", Integer, primary_key=True, autoincrement=False),
        Column("name", String(64), nullable=False),
        Column("status", String(16), nullable=False, default="active"),
        Column("score", Integer, nullable=True),
        Column("created_at", DateTime, nullable=True),
        Column("deleted_at", DateTime, nullable=True),
        Column("archived_at", DateTime, nullable=True),
        Column("archive_reason", String(255), nullable=True),
    )
    table.create(engine)
    yield name
    table.drop(engine)


@pytest.fixture
def seed(engine: Engine, widgets: str) -> Callable[..., list[int]]:
    """Insert widgets; returns their ids."""
    table = Table(widgets, MetaData(), autoload_with=engine)

    def _seed(count: int, start: int = 1, **overrides: Any) -> list[int]:
        rows = widget_rows(count, start)
        for row in rows:
            row.update(overrides)
        with engine.begin() as conn:
            conn.execute(insert(table), rows)
        return [row["id"] for row in rows]

    return _seed


@pytest.fixture
def fetch_widgets(engine: Engine, widgets: str) -> Callable[[], dict[int, dict]]:
    table = Table(widgets, MetaData(), autoload_with=engine)

    def _fetch() -> dict[int, dict]:
        with engine.connect() as conn:
            return {row["id"]: dict(row) for row in conn.execute(table.select()).mappings()}

    return _fetch


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def entities(widgets: str) -> EntityRegistry:
    """`widgets` soft-deletes; `gadgets` is the same table with hard deletes."""
    return EntityRegistry(
        EntityType("widgets", widgets, soft_delete_column="deleted_at"),
        EntityType("gadgets", widgets),
    )


@pytest.fixture
def events() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def make_engine(
    engine: Engine,
    entities: EntityRegistry,
    clock: FakeClock,
    events: RecordingEventSink,
    clean_ledger: None,
) -> Callable[..., BulkActionEngine]:
    """
    Build a BulkActionEngine over the test database with an in-process
    queue and cache driven by the fake clock.

    Usage:
        bulk = make_engine(batch_size=10, max_retries=1, actions={"flaky": FlakyAction({3})})
    """

    def _make(
        *,
        actions: Optional[dict] = None,
        authorizer=None,
        memory=None,
        **config: Any,
    ) -> BulkActionEngine:
        registry = default_registry(clock.utcnow)
        for name, handler in (actions or {}).items():
            registry.register(name, handler)
        settings = {"batch_size": 100, "retry_backoff_s": 1.0, **config}
        return BulkActionEngine(
            engine,
            entities,
            actions=registry,
            queue=LocalQueue(clock=clock.time),
            cache=MemoryCache(clock=clock.time),
            events=events,
            config=EngineConfig(**settings),
            authorizer=authorizer,
            memory=memory,
            clock=clock.utcnow,
            timer=clock.time,
            monotonic=clock.monotonic,
        )

    return _make


@pytest.fixture
def bulk(make_engine: Callable[..., BulkActionEngine]) -> BulkActionEngine:
    return make_engine()
