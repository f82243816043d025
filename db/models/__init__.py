"""Database models package."""

from db.models.base_model import (
    BaseModel,
    TimestampMixin,
    polymorphic_id_column,
    polymorphic_type_column,
)
from db.models.business import Client, Job, PeopleGroup, Person, Task, User
from db.models.polymorphic import (
    ActivityLog,
    JobTarget,
    Note,
    ParsedEmail,
    ScheduledDateTime,
)

__all__ = [
    "ActivityLog",
    "BaseModel",
    "Client",
    "Job",
    "JobTarget",
    "Note",
    "ParsedEmail",
    "PeopleGroup",
    "Person",
    "ScheduledDateTime",
    "Task",
    "TimestampMixin",
    "User",
    "polymorphic_id_column",
    "polymorphic_type_column",
]
