"""
FastAPI dependencies for the polymorphic components.

The tracker, registry, version history and monitoring are built once in
the app lifespan and kept on app.state; discovery is built per request
against the configured engine.
"""

from fastapi import Depends, Request
from sqlalchemy.engine import Engine

from apps.api.config import get_settings
from apps.api.db import get_engine
from packages.polymorphic.discovery import PolymorphicDiscovery
from packages.polymorphic.evolution import SchemaEvolution
from packages.polymorphic.exceptions import NotInitializedError
from packages.polymorphic.introspection import SQLAlchemySchemaIntrospector
from packages.polymorphic.monitoring import PolymorphicMonitoring
from packages.polymorphic.registry import PolymorphicRegistry
from packages.polymorphic.tracker import PolymorphicTracker


def get_registry(request: Request) -> PolymorphicRegistry:
    """Registry created during app startup."""
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        raise NotInitializedError("PolymorphicRegistry")
    return registry


def get_tracker(registry: PolymorphicRegistry = Depends(get_registry)) -> PolymorphicTracker:
    return registry.tracker


def get_discovery(
    registry: PolymorphicRegistry = Depends(get_registry),
    engine: Engine = Depends(get_engine),
) -> PolymorphicDiscovery:
    """Discovery over the application database, bound to the registry."""
    settings = get_settings()
    return PolymorphicDiscovery(
        SQLAlchemySchemaIntrospector(engine),
        registry=registry,
        cache_ttl_seconds=settings.discovery_cache_ttl_seconds,
    )


def get_evolution(request: Request) -> SchemaEvolution:
    evolution = getattr(request.app.state, "evolution", None)
    if evolution is None:
        raise NotInitializedError("SchemaEvolution")
    return evolution


def get_monitoring(request: Request) -> PolymorphicMonitoring:
    monitoring = getattr(request.app.state, "monitoring", None)
    if monitoring is None:
        raise NotInitializedError("PolymorphicMonitoring")
    return monitoring
