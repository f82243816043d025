"""
SQLAlchemy declarative base for the business schema.

Constraint names follow a fixed convention so that foreign keys read back
through introspection carry predictable names.
"""

from sqlalchemy import MetaData
from sqlalchemy.orm import DeclarativeBase

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Base class for jobs, tasks, clients and the polymorphic owner tables."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)
