from __future__ import annotations

import uuid
from collections.abc import Iterator

import pytest
from sqlalchemy import Column, Integer, MetaData, String, Table
from sqlalchemy.engine import Engine


@pytest.fixture
def counters(engine: Engine) -> Iterator[Table]:
    """
    A fresh counters table per test:

    - `id` primary key
    - `value` counter
    - `state` string used as a compare-and-set precondition
    """
    table = Table(
        f"counters_{uuid.uuid4().hex[:10]}",
        MetaData(),
        Column("id", Integer, primary_key=True, autoincrement=False),
        Column("value", Integer, nullable=False, default=0),
        Column("hits", Integer, nullable=False, default=0),
        Column("state", String(16), nullable=True),
        Column("note", String(64), nullable=True),
    )
    table.create(engine)
    yield table
    table.drop(engine)
