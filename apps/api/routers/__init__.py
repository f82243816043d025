"""API routers package."""

from apps.api.routers import health, polymorphic

__all__ = ["health", "polymorphic"]
