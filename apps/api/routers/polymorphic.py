"""
Admin routes for polymorphic associations.

- Inspect tracked types and their targets
- Add, deactivate and remove targets (relationships re-sync automatically)
- Validate the config, run schema discovery, manage backups
- Export, import and version the config; roll back to a recorded version
- Read monitoring alerts and reports
"""

from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field

from apps.api.dependencies import (
    get_discovery,
    get_evolution,
    get_monitoring,
    get_registry,
    get_tracker,
)
from packages.polymorphic.discovery import PolymorphicDiscovery
from packages.polymorphic.evolution import SchemaEvolution
from packages.polymorphic.exceptions import UnknownPolymorphicTypeError
from packages.polymorphic.monitoring import PolymorphicMonitoring
from packages.polymorphic.registry import PolymorphicRegistry
from packages.polymorphic.schemas import (
    AssociationConfig,
    ConfigExport,
    DiscoveryResult,
    MonitoringReport,
    PolymorphicConfig,
    SchemaAlert,
    SchemaAnalysis,
    SchemaChange,
    StorageStats,
    TargetMetadata,
    TargetSource,
    ValidationResult,
    utc_now,
)
from packages.polymorphic.tracker import PolymorphicTracker
from packages.shared.exceptions import NotFoundError

router = APIRouter(prefix="/polymorphic", tags=["Polymorphic"])


# =============================================================================
# Schemas
# =============================================================================


class TypeSummary(BaseModel):
    """One polymorphic type with target counts."""

    type: str
    description: str
    active_targets: int
    total_targets: int


class TargetCreate(BaseModel):
    """Target creation request."""

    table_name: str = Field(..., min_length=1)
    model_name: str = Field(..., min_length=1)
    source: TargetSource = TargetSource.MANUAL


class BackupResponse(BaseModel):
    backup_key: str | None


class VersionSummary(BaseModel):
    """A recorded config version without its snapshot."""

    version: str
    created_at: datetime
    changes: list[SchemaChange]


def _require_type(tracker: PolymorphicTracker, polymorphic_type: str) -> AssociationConfig:
    association = tracker.get_association_config(polymorphic_type)
    if association is None:
        raise UnknownPolymorphicTypeError(polymorphic_type)
    return association


# =============================================================================
# Routes: Types and Targets
# =============================================================================


@router.get("/types", response_model=list[TypeSummary])
def list_types(tracker: PolymorphicTracker = Depends(get_tracker)) -> list[TypeSummary]:
    summaries = []
    for polymorphic_type in tracker.get_polymorphic_types():
        association = _require_type(tracker, polymorphic_type)
        summaries.append(
            TypeSummary(
                type=polymorphic_type,
                description=association.description,
                active_targets=len(tracker.get_valid_targets(polymorphic_type)),
                total_targets=len(association.valid_targets),
            )
        )
    return summaries


@router.get("/types/{polymorphic_type}", response_model=AssociationConfig)
def get_type(
    polymorphic_type: str,
    tracker: PolymorphicTracker = Depends(get_tracker),
) -> AssociationConfig:
    return _require_type(tracker, polymorphic_type)


@router.get("/types/{polymorphic_type}/targets", response_model=list[TargetMetadata])
def list_targets(
    polymorphic_type: str,
    include_inactive: bool = Query(default=False),
    tracker: PolymorphicTracker = Depends(get_tracker),
) -> list[TargetMetadata]:
    _require_type(tracker, polymorphic_type)
    targets = []
    for table_name in tracker.get_valid_targets(polymorphic_type, include_inactive=include_inactive):
        metadata = tracker.get_target_metadata(polymorphic_type, table_name)
        if metadata is not None:
            targets.append(metadata)
    return targets


@router.post(
    "/types/{polymorphic_type}/targets",
    response_model=TargetMetadata,
    status_code=status.HTTP_201_CREATED,
)
async def add_target(
    polymorphic_type: str,
    body: TargetCreate,
    registry: PolymorphicRegistry = Depends(get_registry),
) -> TargetMetadata:
    """Add or refresh a target. Unknown types are created."""
    return await registry.add_polymorphic_target(
        polymorphic_type,
        body.table_name,
        body.model_name,
        source=body.source,
    )


@router.post(
    "/types/{polymorphic_type}/targets/{table_name}/deactivate",
    response_model=TargetMetadata,
)
async def deactivate_target(
    polymorphic_type: str,
    table_name: str,
    registry: PolymorphicRegistry = Depends(get_registry),
) -> TargetMetadata:
    await registry.deactivate_polymorphic_target(polymorphic_type, table_name)
    metadata = registry.tracker.get_target_metadata(polymorphic_type, table_name)
    if metadata is None:
        raise NotFoundError("Target", f"{polymorphic_type}/{table_name}")
    return metadata


@router.delete(
    "/types/{polymorphic_type}/targets/{table_name}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def remove_target(
    polymorphic_type: str,
    table_name: str,
    registry: PolymorphicRegistry = Depends(get_registry),
) -> Response:
    """Remove a target. Removing a missing target is a no-op."""
    await registry.remove_polymorphic_target(polymorphic_type, table_name)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# =============================================================================
# Routes: Validation, Discovery, Backups
# =============================================================================


@router.get("/validation", response_model=ValidationResult)
def validate_config(tracker: PolymorphicTracker = Depends(get_tracker)) -> ValidationResult:
    return tracker.validate()


@router.get("/discovery", response_model=list[DiscoveryResult])
def discover(
    discovery: PolymorphicDiscovery = Depends(get_discovery),
    monitoring: PolymorphicMonitoring = Depends(get_monitoring),
) -> list[DiscoveryResult]:
    """Discovered types; low-confidence and new targets raise alerts."""
    results = discovery.discover_polymorphic_types()
    monitoring.monitor_discovery(results)
    return results


@router.get("/discovery/analysis", response_model=SchemaAnalysis)
def analyze(
    discovery: PolymorphicDiscovery = Depends(get_discovery),
    monitoring: PolymorphicMonitoring = Depends(get_monitoring),
) -> SchemaAnalysis:
    analysis = discovery.analyze_schema()
    monitoring.monitor_schema_analysis(analysis)
    return analysis


@router.post("/backups", response_model=BackupResponse, status_code=status.HTTP_201_CREATED)
async def create_backup(tracker: PolymorphicTracker = Depends(get_tracker)) -> BackupResponse:
    return BackupResponse(backup_key=await tracker.create_backup())


@router.get("/backups", response_model=list[str])
async def list_backups(tracker: PolymorphicTracker = Depends(get_tracker)) -> list[str]:
    return await tracker.list_backups()


@router.post("/backups/{backup_key}/restore", response_model=PolymorphicConfig)
async def restore_backup(
    backup_key: str,
    registry: PolymorphicRegistry = Depends(get_registry),
    evolution: SchemaEvolution = Depends(get_evolution),
) -> PolymorphicConfig:
    """Restore a backup; relationships re-sync and a new version is recorded."""
    config = await registry.restore_backup(backup_key)
    await evolution.create_version(config)
    return config


# =============================================================================
# Routes: Export, Import, Storage
# =============================================================================


@router.get("/export", response_model=ConfigExport)
def export_config(
    description: str | None = Query(default=None),
    tags: list[str] = Query(default=[]),
    tracker: PolymorphicTracker = Depends(get_tracker),
) -> ConfigExport:
    return tracker.export_config(description=description, tags=tags)


@router.post("/import", response_model=PolymorphicConfig)
async def import_config(
    body: ConfigExport,
    registry: PolymorphicRegistry = Depends(get_registry),
    evolution: SchemaEvolution = Depends(get_evolution),
) -> PolymorphicConfig:
    """Replace the config with exported data. The previous config is backed up."""
    config = await registry.import_config(body)
    await evolution.create_version(config)
    return config


@router.get("/storage", response_model=StorageStats)
async def storage_stats(tracker: PolymorphicTracker = Depends(get_tracker)) -> StorageStats:
    return await tracker.get_storage_stats()


# =============================================================================
# Routes: Versions
# =============================================================================


@router.get("/versions", response_model=list[VersionSummary])
async def list_versions(evolution: SchemaEvolution = Depends(get_evolution)) -> list[VersionSummary]:
    """Recorded versions, newest first."""
    return [
        VersionSummary(version=v.version, created_at=v.created_at, changes=v.changes)
        for v in await evolution.get_version_history()
    ]


@router.post("/versions", response_model=VersionSummary, status_code=status.HTTP_201_CREATED)
async def create_version(
    tracker: PolymorphicTracker = Depends(get_tracker),
    evolution: SchemaEvolution = Depends(get_evolution),
) -> VersionSummary:
    """Record the current config as a version."""
    version = await evolution.create_version(tracker.get_config())
    return VersionSummary(
        version=version.version, created_at=version.created_at, changes=version.changes
    )


@router.post("/versions/{version_id}/rollback", response_model=PolymorphicConfig)
async def rollback_version(
    version_id: str,
    registry: PolymorphicRegistry = Depends(get_registry),
    evolution: SchemaEvolution = Depends(get_evolution),
) -> PolymorphicConfig:
    if await evolution.get_version(version_id) is None:
        raise NotFoundError("Version", version_id)
    return await evolution.rollback_to_version(version_id, registry)


# =============================================================================
# Routes: Monitoring
# =============================================================================


@router.get("/monitoring/alerts", response_model=list[SchemaAlert])
def list_alerts(monitoring: PolymorphicMonitoring = Depends(get_monitoring)) -> list[SchemaAlert]:
    return monitoring.get_active_alerts()


@router.post(
    "/monitoring/alerts/{alert_id}/resolve",
    status_code=status.HTTP_204_NO_CONTENT,
)
def resolve_alert(
    alert_id: str,
    resolved_by: str | None = Query(default=None),
    monitoring: PolymorphicMonitoring = Depends(get_monitoring),
) -> Response:
    if not monitoring.resolve_alert(alert_id, resolved_by):
        raise NotFoundError("Alert", alert_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/monitoring/report", response_model=MonitoringReport)
def monitoring_report(
    hours: float = Query(default=24, gt=0),
    monitoring: PolymorphicMonitoring = Depends(get_monitoring),
) -> MonitoringReport:
    end = utc_now()
    return monitoring.generate_report(end - timedelta(hours=hours), end)
