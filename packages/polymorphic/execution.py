"""
Row-query execution.

ChainableQuery never touches a data store directly: it drives a RowQuery
obtained from a QueryFactory (table name -> fresh RowQuery). The
SQLAlchemy implementation runs Core selects against reflected or declared
tables and returns plain dict rows.
"""

import copy
import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any, Protocol, Union, cast, runtime_checkable

from sqlalchemy import MetaData, Table, select
from sqlalchemy.engine import Result
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session
from sqlalchemy.sql import ColumnElement, Select

from packages.polymorphic.relationships import (
    DirectRelationship,
    RelationshipRegistry,
    RelationshipType,
)

logger = logging.getLogger(__name__)

Row = dict[str, Any]
SessionLike = Union[Session, AsyncSession]

SUPPORTED_OPERATORS = ("=", "!=", "<", "<=", ">", ">=", "in", "not in", "like")


@runtime_checkable
class RowQuery(Protocol):
    """Builder over one table. Chain methods return a query to keep chaining."""

    def where(self, column: str, value: Any, op: str = "=") -> "RowQuery": ...

    def order_by(self, column: str, direction: str = "asc") -> "RowQuery": ...

    def limit(self, count: int) -> "RowQuery": ...

    def offset(self, count: int) -> "RowQuery": ...

    def related(
        self,
        name: str,
        refine: Callable[["RowQuery"], "RowQuery"] | None = None,
    ) -> "RowQuery": ...

    async def run(self) -> list[Row]: ...


QueryFactory = Callable[[str], RowQuery]


class SQLAlchemyRowQuery:
    """
    RowQuery over a SQLAlchemy Table.

    Accepts Session or AsyncSession. related() resolves DirectRelationship
    descriptors from the relationship registry with one batched follow-up
    select per relationship.
    """

    def __init__(
        self,
        session: SessionLike,
        table: Table,
        metadata: MetaData,
        relationships: RelationshipRegistry | None = None,
    ) -> None:
        self._session = session
        self._table = table
        self._metadata = metadata
        self._relationships = relationships
        self._filters: list[tuple[str, str, Any]] = []
        self._order_by: list[tuple[str, str]] = []
        self._limit: int | None = None
        self._offset: int | None = None
        self._related: list[tuple[str, Callable[[RowQuery], RowQuery] | None]] = []

    @property
    def table(self) -> Table:
        return self._table

    def _clone(self) -> "SQLAlchemyRowQuery":
        clone = copy.copy(self)
        clone._filters = list(self._filters)
        clone._order_by = list(self._order_by)
        clone._related = list(self._related)
        return clone

    def _column(self, name: str) -> ColumnElement[Any]:
        try:
            return self._table.c[name]
        except KeyError:
            raise ValueError(f"Unknown column '{name}' on table '{self._table.name}'") from None

    # =========================================================================
    # Builder
    # =========================================================================

    def where(self, column: str, value: Any, op: str = "=") -> "SQLAlchemyRowQuery":
        if op not in SUPPORTED_OPERATORS:
            raise ValueError(f"Unsupported operator '{op}'")
        self._column(column)
        clone = self._clone()
        clone._filters.append((column, op, value))
        return clone

    def order_by(self, column: str, direction: str = "asc") -> "SQLAlchemyRowQuery":
        if direction not in ("asc", "desc"):
            raise ValueError(f"Unsupported sort direction '{direction}'")
        self._column(column)
        clone = self._clone()
        clone._order_by.append((column, direction))
        return clone

    def limit(self, count: int) -> "SQLAlchemyRowQuery":
        clone = self._clone()
        clone._limit = count
        return clone

    def offset(self, count: int) -> "SQLAlchemyRowQuery":
        clone = self._clone()
        clone._offset = count
        return clone

    def related(
        self,
        name: str,
        refine: Callable[[RowQuery], RowQuery] | None = None,
    ) -> "SQLAlchemyRowQuery":
        clone = self._clone()
        clone._related.append((name, refine))
        return clone

    # =========================================================================
    # Execution
    # =========================================================================

    def _condition(self, column: str, op: str, value: Any) -> ColumnElement[bool]:
        col = self._column(column)
        if op == "=":
            return col.is_(None) if value is None else col == value
        if op == "!=":
            return col.is_not(None) if value is None else col != value
        if op == "<":
            return col < value
        if op == "<=":
            return col <= value
        if op == ">":
            return col > value
        if op == ">=":
            return col >= value
        if op == "in":
            return col.in_(list(value))
        if op == "not in":
            return col.not_in(list(value))
        return col.like(value)

    def build_statement(self) -> Select[Any]:
        stmt = select(self._table)
        for column, op, value in self._filters:
            stmt = stmt.where(self._condition(column, op, value))
        for column, direction in self._order_by:
            col = self._column(column)
            stmt = stmt.order_by(col.desc() if direction == "desc" else col.asc())
        if self._limit is not None:
            stmt = stmt.limit(self._limit)
        if self._offset is not None:
            stmt = stmt.offset(self._offset)
        return stmt

    async def _execute(self, stmt: Select[Any]) -> Result[Any]:
        if isinstance(self._session, AsyncSession):
            return await self._session.execute(stmt)
        return cast(Session, self._session).execute(stmt)

    async def run(self) -> list[Row]:
        result = await self._execute(self.build_statement())
        rows = [dict(row) for row in result.mappings().all()]
        for name, refine in self._related:
            await self._load_related(rows, name, refine)
        return rows

    def _child(self, table_name: str) -> "SQLAlchemyRowQuery":
        return SQLAlchemyQueryFactory(self._session, self._metadata, self._relationships)(table_name)

    async def _load_related(
        self,
        rows: list[Row],
        name: str,
        refine: Callable[[RowQuery], RowQuery] | None,
    ) -> None:
        descriptor = None
        if self._relationships is not None:
            descriptor = self._relationships.get_relationship_metadata(self._table.name, name)
        if not isinstance(descriptor, DirectRelationship):
            raise ValueError(f"No direct relationship '{name}' registered on '{self._table.name}'")

        if descriptor.type == RelationshipType.BELONGS_TO:
            await self._load_belongs_to(rows, descriptor, refine)
        else:
            await self._load_has_many(rows, descriptor, refine)

    async def _load_belongs_to(
        self,
        rows: list[Row],
        descriptor: DirectRelationship,
        refine: Callable[[RowQuery], RowQuery] | None,
    ) -> None:
        def matches(row: Row) -> bool:
            if descriptor.discriminator_column is None:
                return True
            return row.get(descriptor.discriminator_column) == descriptor.discriminator_value

        ids = {row.get(descriptor.foreign_key) for row in rows if matches(row)}
        ids.discard(None)

        by_id: dict[Any, Row] = {}
        if ids:
            query: RowQuery = self._child(descriptor.target_table).where(
                descriptor.primary_key, sorted(ids, key=str), op="in"
            )
            if refine is not None:
                query = refine(query)
            by_id = {row[descriptor.primary_key]: row for row in await query.run()}

        for row in rows:
            row[descriptor.name] = by_id.get(row.get(descriptor.foreign_key)) if matches(row) else None

    async def _load_has_many(
        self,
        rows: list[Row],
        descriptor: DirectRelationship,
        refine: Callable[[RowQuery], RowQuery] | None,
    ) -> None:
        ids = {row.get(descriptor.primary_key) for row in rows}
        ids.discard(None)

        grouped: dict[Any, list[Row]] = defaultdict(list)
        if ids:
            query: RowQuery = self._child(descriptor.target_table).where(
                descriptor.foreign_key, sorted(ids, key=str), op="in"
            )
            if descriptor.discriminator_column is not None:
                query = query.where(descriptor.discriminator_column, descriptor.discriminator_value)
            if refine is not None:
                query = refine(query)
            for child in await query.run():
                grouped[child.get(descriptor.foreign_key)].append(child)

        for row in rows:
            children = grouped.get(row.get(descriptor.primary_key), [])
            if descriptor.type == RelationshipType.HAS_ONE:
                row[descriptor.name] = children[0] if children else None
            else:
                row[descriptor.name] = children


class SQLAlchemyQueryFactory:
    """QueryFactory producing SQLAlchemyRowQuery instances for a MetaData."""

    def __init__(
        self,
        session: SessionLike,
        metadata: MetaData,
        relationships: RelationshipRegistry | None = None,
    ) -> None:
        self.session = session
        self.metadata = metadata
        self.relationships = relationships

    def __call__(self, table_name: str) -> SQLAlchemyRowQuery:
        table = self.metadata.tables.get(table_name)
        if table is None:
            raise ValueError(f"Unknown table '{table_name}'")
        return SQLAlchemyRowQuery(self.session, table, self.metadata, self.relationships)
