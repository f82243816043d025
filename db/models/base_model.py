"""Base model with common fields and mixins."""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


def polymorphic_id_column() -> Mapped[uuid.UUID | None]:
    """Nullable id half of a {type}_id / {type}_type pair."""
    return mapped_column(Uuid, nullable=True, index=True)


def polymorphic_type_column() -> Mapped[str | None]:
    """Nullable model-name half of a {type}_id / {type}_type pair."""
    return mapped_column(String(100), nullable=True, index=True)


class BaseModel(Base, TimestampMixin):
    """Base model with UUID primary key and timestamps."""

    __abstract__ = True

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
        nullable=False,
    )
