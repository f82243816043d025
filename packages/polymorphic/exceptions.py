"""
Polymorphic association exceptions.

Usage errors (calling before initialize, filtering by an invalid target)
are raised immediately. Configuration problems are never raised on write;
they are reported by PolymorphicTracker.validate().
"""

from typing import Any

from packages.shared.exceptions import (
    AppException,
    ConflictError,
    DatabaseException,
    NotFoundError,
    ValidationError,
)


class PolymorphicError(AppException):
    """Base exception for polymorphic association handling."""

    pass


class NotInitializedError(ConflictError, PolymorphicError):
    """Raised when a component is used before initialize() completed."""

    def __init__(self, component: str) -> None:
        self.component = component
        super().__init__(
            message=(
                f"{component} must be initialized before use. "
                "Call initialize() first."
            ),
            detail={"component": component},
        )


class PolymorphicValidationError(ValidationError, PolymorphicError):
    """Raised for invalid query filters, blank type names and similar misuse."""

    def __init__(
        self,
        message: str,
        errors: list[dict[str, Any]] | None = None,
    ) -> None:
        super().__init__(message=message, errors=errors)


class UnknownPolymorphicTypeError(NotFoundError, PolymorphicError):
    """Raised by lookups that require an existing polymorphic type."""

    def __init__(self, polymorphic_type: str) -> None:
        self.polymorphic_type = polymorphic_type
        super().__init__(resource="Polymorphic type", identifier=polymorphic_type)


class ConfigStoreError(DatabaseException, PolymorphicError):
    """Raised when a persisted configuration document cannot be read."""

    def __init__(self, message: str, config_id: str | None = None) -> None:
        self.config_id = config_id
        super().__init__(message=message, detail={"config_id": config_id})
