from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional, Union

from sqlalchemy import MetaData, Table, delete, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import NoSuchTableError

from .db.helpers import validate_identifier
from .db.session import DbSession
from .errors import SpecInvalid


@dataclass(frozen=True)
class EntityType:
    """
    A target table the engine may mutate.

    ``soft_delete_column`` names a nullable timestamp column; when set,
    ``delete`` marks rows instead of removing them and resolution skips
    marked rows unless asked not to.
    """

    name: str
    table: str
    id_column: str = "id"
    soft_delete_column: Optional[str] = None

    def __post_init__(self) -> None:
        validate_identifier(self.table, "table")
        validate_identifier(self.id_column, "id_column")
        if self.soft_delete_column is not None:
            validate_identifier(self.soft_delete_column, "soft_delete_column")

    @property
    def soft_deletes(self) -> bool:
        return self.soft_delete_column is not None


class EntityRegistry:
    """
    Name -> EntityType, with lazily reflected SQLAlchemy tables.

    Reflection happens once per entity per registry; the reflected column set
    is what filter predicates and update payloads are validated against.
    """

    def __init__(self, *entities: EntityType) -> None:
        self._entities: dict[str, EntityType] = {}
        self._tables: dict[str, Table] = {}
        self._metadata = MetaData()
        self._lock = threading.Lock()
        for entity in entities:
            self.register(entity)

    def register(self, entity: EntityType) -> None:
        with self._lock:
            self._entities[entity.name] = entity
            self._tables.pop(entity.name, None)

    def get(self, name: str) -> EntityType:
        try:
            return self._entities[name]
        except KeyError:
            raise SpecInvalid(f"Unknown entity type {name!r}") from None

    def has(self, name: str) -> bool:
        return name in self._entities

    def names(self) -> list[str]:
        return sorted(self._entities)

    def table(self, name: str, bind: Union[Engine, Connection]) -> Table:
        entity = self.get(name)
        with self._lock:
            table = self._tables.get(name)
            if table is not None:
                return table
            try:
                table = Table(entity.table, self._metadata, autoload_with=bind, extend_existing=True)
            except NoSuchTableError:
                raise SpecInvalid(f"Table {entity.table!r} for entity {name!r} does not exist") from None
            for col in (entity.id_column, entity.soft_delete_column):
                if col is not None and col not in table.c:
                    raise SpecInvalid(f"Column {col!r} missing from table {entity.table!r}")
            self._tables[name] = table
            return table

    def store(self, session: DbSession, name: str) -> "RecordStore":
        # reflect on the session connection: a second connection could block on
        # the write lock this transaction already holds
        return RecordStore(session, self.get(name), self.table(name, session.connection))


class RecordStore:
    """
    Row-level access to one entity table inside the caller's transaction.

    Every write goes through the caller's ``DbSession`` so a record mutation,
    its snapshot and the batch cursor commit or roll back together.
    """

    def __init__(self, session: DbSession, entity: EntityType, table: Table) -> None:
        self.session = session
        self.entity = entity
        self.table = table

    @property
    def id_col(self):
        return self.table.c[self.entity.id_column]

    def columns(self) -> list[str]:
        return [c.name for c in self.table.columns]

    def check_columns(self, names) -> None:
        unknown = sorted(set(names) - set(self.table.c.keys()))
        if unknown:
            raise SpecInvalid(f"Unknown column(s) {unknown} on {self.entity.table!r}")

    def fetch(self, record_id: Any) -> Optional[dict[str, Any]]:
        return self.session.fetch_one(select(self.table).where(self.id_col == record_id))

    def is_deleted(self, record: Mapping[str, Any]) -> bool:
        col = self.entity.soft_delete_column
        return col is not None and record.get(col) is not None

    def update(self, record_id: Any, fields: Mapping[str, Any]) -> int:
        values = {k: v for k, v in fields.items() if k != self.entity.id_column}
        if not values:
            return 0
        self.check_columns(values)
        return self.session.execute(update(self.table).where(self.id_col == record_id).values(**values))

    def soft_delete(self, record_id: Any, at: datetime) -> int:
        col = self._soft_col()
        return self.session.execute(
            update(self.table).where(self.id_col == record_id).values({col: at})
        )

    def reinstate(self, record_id: Any) -> int:
        col = self._soft_col()
        return self.session.execute(
            update(self.table).where(self.id_col == record_id).values({col: None})
        )

    def destroy(self, record_id: Any) -> int:
        return self.session.execute(delete(self.table).where(self.id_col == record_id))

    def insert(self, row: Mapping[str, Any]) -> Any:
        self.check_columns(row)
        return self.session.insert(insert(self.table).values(**dict(row)))

    def _soft_col(self) -> str:
        if self.entity.soft_delete_column is None:
            raise SpecInvalid(f"Entity {self.entity.name!r} does not support soft deletes")
        return self.entity.soft_delete_column
