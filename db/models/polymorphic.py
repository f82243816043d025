"""
Owner tables carrying polymorphic column pairs.

Each table references rows of several business tables through a
{type}_id / {type}_type pair; the _type column holds the target model
name (e.g. 'Job'). There is no database foreign key on the pair.
"""

import uuid
from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from db.models.base_model import BaseModel, polymorphic_id_column, polymorphic_type_column


class Note(BaseModel):
    """Free-text note on a job, task or client."""

    __tablename__ = "notes"

    content: Mapped[str] = mapped_column(Text, nullable=False)
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    notable_id: Mapped[uuid.UUID | None] = polymorphic_id_column()
    notable_type: Mapped[str | None] = polymorphic_type_column()


class ActivityLog(BaseModel):
    """Change record for any tracked model."""

    __tablename__ = "activity_logs"

    action: Mapped[str] = mapped_column(String(50), nullable=False)
    changes: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    loggable_id: Mapped[uuid.UUID | None] = polymorphic_id_column()
    loggable_type: Mapped[str | None] = polymorphic_type_column()


class ScheduledDateTime(BaseModel):
    """A scheduled slot for a job or task."""

    __tablename__ = "scheduled_date_times"

    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    scheduled_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    schedulable_id: Mapped[uuid.UUID | None] = polymorphic_id_column()
    schedulable_type: Mapped[str | None] = polymorphic_type_column()


class JobTarget(BaseModel):
    """Who a job is for: a client, a person or a people group."""

    __tablename__ = "job_targets"

    job_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    target_id: Mapped[uuid.UUID | None] = polymorphic_id_column()
    target_type: Mapped[str | None] = polymorphic_type_column()


class ParsedEmail(BaseModel):
    """Inbound email matched to a job or task."""

    __tablename__ = "parsed_emails"

    subject: Mapped[str] = mapped_column(String(500), nullable=False)
    from_address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    parseable_id: Mapped[uuid.UUID | None] = polymorphic_id_column()
    parseable_type: Mapped[str | None] = polymorphic_type_column()
