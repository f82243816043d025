"""
Business entities that polymorphic rows point at.

Plain tables with UUID keys: clients, people, people_groups, users,
jobs and tasks.
"""

import uuid

from sqlalchemy import ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from db.models.base_model import BaseModel


class Client(BaseModel):
    """A customer organization."""

    __tablename__ = "clients"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    client_type: Mapped[str | None] = mapped_column(String(50), nullable=True)


class Person(BaseModel):
    """A contact person. Irregular plural: people -> Person."""

    __tablename__ = "people"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    client_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("clients.id", ondelete="SET NULL"),
        nullable=True,
    )


class PeopleGroup(BaseModel):
    """A named group of people."""

    __tablename__ = "people_groups"

    name: Mapped[str] = mapped_column(String(255), nullable=False)


class User(BaseModel):
    """An application user (technician, admin)."""

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)


class Job(BaseModel):
    """A unit of client work."""

    __tablename__ = "jobs"

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="open")
    client_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("clients.id", ondelete="SET NULL"),
        nullable=True,
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)


class Task(BaseModel):
    """A step within a job."""

    __tablename__ = "tasks"

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="new_task")
    job_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=True,
    )
