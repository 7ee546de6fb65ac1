"""
Target resolution: filter spec -> count, a lazy id stream, and a preview.

The id stream pages by primary key (``WHERE id > :last ORDER BY id LIMIT n``)
so memory stays bounded by the page size whatever the match count, and the
order is stable across pages even while rows are being mutated.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import Table, and_, func, not_, select
from sqlalchemy.engine import Engine
from sqlalchemy.sql import ColumnElement

from .db.session import DbSession
from .errors import SpecInvalid
from .models import FilterOp, FilterSpec, Predicate, PreviewResult
from .records import EntityRegistry

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 1_000


@dataclass
class ResolvedTarget:
    entity_type: str
    spec: FilterSpec
    table: Table
    id_column: str
    where: Optional[ColumnElement]


class TargetResolver:
    def __init__(self, engine: Engine, entities: EntityRegistry, *, page_size: int = DEFAULT_PAGE_SIZE) -> None:
        if page_size <= 0:
            raise ValueError("page_size must be > 0")
        self.engine = engine
        self.entities = entities
        self.page_size = page_size

    def resolve(self, entity_type: str, raw_filter: Any) -> ResolvedTarget:
        """
        Validate a filter against the entity table and compile its WHERE clause.

        Raises SpecInvalid before anything is written.
        """
        spec = FilterSpec.parse(raw_filter)
        entity = self.entities.get(entity_type)
        table = self.entities.table(entity_type, self.engine)
        id_col = table.c[entity.id_column]

        clauses: list[ColumnElement] = []
        if spec.ids is not None:
            clauses.append(id_col.in_(list(spec.ids)))
        for predicate in spec.where:
            clauses.append(self._compile(table, predicate))
        if entity.soft_deletes and not spec.include_deleted:
            clauses.append(table.c[entity.soft_delete_column].is_(None))

        where = and_(*clauses) if clauses else None
        return ResolvedTarget(entity_type, spec, table, entity.id_column, where)

    def _compile(self, table: Table, predicate: Predicate) -> ColumnElement:
        if predicate.column not in table.c:
            raise SpecInvalid(f"Unknown column {predicate.column!r} on {table.name!r}")
        col = table.c[predicate.column]
        op = predicate.op
        if op is FilterOp.EQ:
            return col == predicate.value
        if op is FilterOp.LT:
            return col < predicate.value
        if op is FilterOp.GT:
            return col > predicate.value
        if op is FilterOp.IN:
            return col.in_(list(predicate.value))
        if op is FilterOp.NOT_IN:
            return not_(col.in_(list(predicate.value)))
        if op is FilterOp.BETWEEN:
            low, high = predicate.value
            return col.between(low, high)
        if op is FilterOp.IS_NULL:
            return col.is_(None)
        if op is FilterOp.IS_NOT_NULL:
            return col.is_not(None)
        raise SpecInvalid(f"Unsupported operator {op!r}")

    def _apply(self, stmt, target: ResolvedTarget):
        return stmt if target.where is None else stmt.where(target.where)

    def count(self, target: ResolvedTarget) -> int:
        stmt = self._apply(select(func.count()).select_from(target.table), target)
        with DbSession(self.engine) as session:
            return int(session.execute_scalar(stmt) or 0)

    def iter_ids(self, target: ResolvedTarget, page_size: Optional[int] = None) -> Iterator[Any]:
        """
        Yield matching ids in ascending key order, one page per short session.
        """
        size = page_size or self.page_size
        id_col = target.table.c[target.id_column]
        last: Any = None
        while True:
            stmt = self._apply(select(id_col), target).order_by(id_col).limit(size)
            if last is not None:
                stmt = stmt.where(id_col > last)
            with DbSession(self.engine) as session:
                page = [row[target.id_column] for row in session.fetch_all(stmt)]
            if not page:
                return
            yield from page
            if len(page) < size:
                return
            last = page[-1]

    def sample(self, target: ResolvedTarget, limit: int) -> list[dict[str, Any]]:
        if limit <= 0:
            return []
        id_col = target.table.c[target.id_column]
        stmt = self._apply(select(target.table), target).order_by(id_col).limit(limit)
        with DbSession(self.engine) as session:
            return session.fetch_all(stmt)

    def preview(self, entity_type: str, raw_filter: Any, limit: int) -> PreviewResult:
        target = self.resolve(entity_type, raw_filter)
        total = self.count(target)
        rows = self.sample(target, min(limit, total)) if total else []
        return PreviewResult(
            total=total,
            sample_ids=[row[target.id_column] for row in rows],
            sample=rows,
        )
