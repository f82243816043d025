"""
Schema introspection for discovery.

Discovery only talks to the SchemaIntrospector protocol. The SQLAlchemy
implementation reads a live database through the runtime inspector.
"""

import logging
from typing import Protocol, runtime_checkable

from sqlalchemy import inspect
from sqlalchemy.engine import Connection, Engine

from packages.polymorphic.schemas import ColumnInfo, ForeignKeyInfo

logger = logging.getLogger(__name__)


@runtime_checkable
class SchemaIntrospector(Protocol):
    """Read-only view of a relational schema."""

    def get_table_names(self) -> list[str]: ...

    def get_table_columns(self, table: str) -> list[ColumnInfo]: ...

    def get_foreign_keys(self) -> list[ForeignKeyInfo]: ...


class SQLAlchemySchemaIntrospector:
    """
    Introspect a database through sqlalchemy.inspect().

    Column types are reported as lower-cased SQL type names
    (e.g. "uuid", "varchar(255)", "integer"). Composite foreign keys are
    split into one ForeignKeyInfo per column pair.
    """

    def __init__(self, bind: Engine | Connection, schema: str | None = None):
        self.bind = bind
        self.schema = schema

    def get_table_names(self) -> list[str]:
        return sorted(inspect(self.bind).get_table_names(schema=self.schema))

    def get_table_columns(self, table: str) -> list[ColumnInfo]:
        inspector = inspect(self.bind)
        pk = inspector.get_pk_constraint(table, schema=self.schema) or {}
        primary_columns = set(pk.get("constrained_columns") or [])

        return [
            ColumnInfo(
                name=column["name"],
                type=str(column["type"]).lower(),
                nullable=bool(column.get("nullable", True)),
                primary=column["name"] in primary_columns,
            )
            for column in inspector.get_columns(table, schema=self.schema)
        ]

    def get_foreign_keys(self) -> list[ForeignKeyInfo]:
        inspector = inspect(self.bind)
        foreign_keys: list[ForeignKeyInfo] = []

        for table in inspector.get_table_names(schema=self.schema):
            for fk in inspector.get_foreign_keys(table, schema=self.schema):
                referred_table = fk.get("referred_table")
                if not referred_table:
                    continue
                for column, referred_column in zip(
                    fk.get("constrained_columns") or [],
                    fk.get("referred_columns") or [],
                ):
                    foreign_keys.append(
                        ForeignKeyInfo(
                            table=table,
                            column=column,
                            referenced_table=referred_table,
                            referenced_column=referred_column,
                        )
                    )

        logger.debug(f"Introspected {len(foreign_keys)} foreign key columns")
        return foreign_keys
