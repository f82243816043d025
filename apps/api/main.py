"""
FastAPI application entrypoint.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from apps.api.config import Settings, get_settings
from apps.api.routers import health, polymorphic
from packages.polymorphic.evolution import SchemaEvolution
from packages.polymorphic.monitoring import AlertThresholds, PolymorphicMonitoring
from packages.polymorphic.persistence import PolymorphicConfigStore
from packages.polymorphic.registry import PolymorphicRegistry
from packages.polymorphic.relationships import InMemoryRelationshipRegistry
from packages.polymorphic.tracker import PolymorphicTracker
from packages.shared.exceptions import AppException, app_exception_handler
from packages.shared.storage import get_document_store_from_settings

logger = logging.getLogger(__name__)


def build_registry(settings: Settings) -> PolymorphicRegistry:
    """Tracker -> Registry, wired from settings."""
    store = PolymorphicConfigStore(
        get_document_store_from_settings(settings),
        max_backups=settings.config_max_backups,
    )
    tracker = PolymorphicTracker(
        store,
        config_id=settings.polymorphic_config_id,
        default_types=settings.default_polymorphic_types,
    )
    return PolymorphicRegistry(tracker, InMemoryRelationshipRegistry())


def build_monitoring(tracker: PolymorphicTracker, settings: Settings) -> PolymorphicMonitoring:
    """Monitoring persisted next to the tracker's config document."""
    monitoring = PolymorphicMonitoring(
        tracker=tracker,
        store=tracker.store.store,
        document_key=f"{tracker.config_id}.monitoring",
        thresholds=AlertThresholds(
            response_time_ms=settings.monitoring_slow_query_ms,
            error_rate=settings.monitoring_error_rate,
        ),
    )
    monitoring.watch(tracker)
    return monitoring


def create_app(registry: PolymorphicRegistry | None = None) -> FastAPI:
    """
    Build the application.

    Args:
        registry: Pre-built registry (tests); built from settings otherwise
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app_registry = registry or build_registry(settings)
        await app_registry.initialize()
        tracker = app_registry.tracker

        evolution = SchemaEvolution(
            tracker.store.store,
            config_id=tracker.config_id,
            max_versions=settings.config_max_versions,
        )
        await evolution.initialize(tracker.get_config())

        monitoring = build_monitoring(tracker, settings)
        await monitoring.load()

        app.state.registry = app_registry
        app.state.evolution = evolution
        app.state.monitoring = monitoring
        logger.info(f"{settings.app_name} started (config {tracker.config_id})")
        yield
        await monitoring.persist()
        monitoring.unwatch(tracker)
        app.state.registry = None
        app.state.evolution = None
        app.state.monitoring = None

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.add_exception_handler(AppException, app_exception_handler)

    # Include routers
    app.include_router(health.router)
    app.include_router(polymorphic.router, prefix=settings.api_v1_prefix)

    return app


logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app()
