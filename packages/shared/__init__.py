"""Shared exceptions and document storage used by the polymorphic components."""

from packages.shared.exceptions import (
    AppException,
    ConflictError,
    DatabaseException,
    NotFoundError,
    ValidationError,
)

__all__ = [
    "AppException",
    "ConflictError",
    "DatabaseException",
    "NotFoundError",
    "ValidationError",
]
