"""
Pydantic schemas for polymorphic association tracking.

Defines models for:
- Persisted configuration (targets, associations, whole document)
- Validation reports
- Discovery results and schema analysis
- Introspected schema shapes
- Config change events, export/import and storage statistics
- Version history and migrations
- Query cache metrics
- Monitoring metrics, usage, alerts and reports
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

CONFIG_VERSION = "1.0.0"
GENERATED_BY = "PolymorphicTracker"

PolymorphicType = str


def utc_now() -> datetime:
    """Return the current UTC time."""
    return datetime.now(UTC)


class TargetSource(str, Enum):
    """Where a target entry came from."""

    GENERATED_SCHEMA = "generated-schema"
    MANUAL = "manual"
    RUNTIME = "runtime"
    DISCOVERY = "discovery"


class Confidence(str, Enum):
    """How certain discovery is that a column pair is polymorphic."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"low": 0, "medium": 1, "high": 2}[self.value]


# =============================================================================
# Persisted Configuration
# =============================================================================


class TargetMetadata(BaseModel):
    """One valid target of a polymorphic type."""

    model_name: str = Field(..., description="Model name stored in the _type column")
    table_name: str = Field(..., description="Target table name")
    discovered_at: datetime = Field(default_factory=utc_now)
    last_verified_at: datetime = Field(default_factory=utc_now)
    active: bool = True
    source: TargetSource = TargetSource.MANUAL


class AssociationMetadata(BaseModel):
    """Bookkeeping for one association."""

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    config_version: str = CONFIG_VERSION
    generated_by: str = GENERATED_BY


class AssociationConfig(BaseModel):
    """One polymorphic type and its valid targets, keyed by table name."""

    type: PolymorphicType
    description: str = ""
    valid_targets: dict[str, TargetMetadata] = Field(default_factory=dict)
    metadata: AssociationMetadata = Field(default_factory=AssociationMetadata)


class ConfigMetadata(BaseModel):
    """Document-level bookkeeping."""

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    config_version: str = CONFIG_VERSION
    total_associations: int = 0
    total_targets: int = 0
    generated_by: str = GENERATED_BY


class PolymorphicConfig(BaseModel):
    """The whole persisted polymorphic configuration document."""

    associations: dict[PolymorphicType, AssociationConfig] = Field(default_factory=dict)
    metadata: ConfigMetadata = Field(default_factory=ConfigMetadata)

    def refresh_totals(self) -> None:
        """Recompute association and target counts and bump updated_at."""
        self.metadata.total_associations = len(self.associations)
        self.metadata.total_targets = sum(
            len(association.valid_targets) for association in self.associations.values()
        )
        self.metadata.updated_at = utc_now()


# =============================================================================
# Validation
# =============================================================================


class ValidationSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class ValidationIssue(BaseModel):
    """A single problem found by validate()."""

    type: PolymorphicType
    target: str | None = None
    message: str
    severity: ValidationSeverity = ValidationSeverity.ERROR


class ValidationMetadata(BaseModel):
    validated_at: datetime = Field(default_factory=utc_now)
    validated_by: str = GENERATED_BY
    total_checked: int = 0
    passed_checks: int = 0
    failed_checks: int = 0


class ValidationResult(BaseModel):
    """Outcome of a whole-config validation pass."""

    valid: bool
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)
    metadata: ValidationMetadata = Field(default_factory=ValidationMetadata)


# =============================================================================
# Schema Introspection
# =============================================================================


class ColumnInfo(BaseModel):
    """One column as reported by a schema introspector."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: str = ""
    nullable: bool = True
    primary: bool = False


class ForeignKeyInfo(BaseModel):
    """One single-column foreign key reference."""

    model_config = ConfigDict(frozen=True)

    table: str
    column: str
    referenced_table: str
    referenced_column: str = "id"


# =============================================================================
# Discovery
# =============================================================================


class DiscoveryTarget(BaseModel):
    """A proposed target for a discovered polymorphic type."""

    table_name: str
    model_name: str
    source: str = "schema-scan"
    relationship_name: str | None = None


class DiscoveryMetadata(BaseModel):
    discovered_at: datetime = Field(default_factory=utc_now)
    source: str = "schema-introspection"
    confidence: Confidence = Confidence.LOW


class DiscoveryResult(BaseModel):
    """One proposed polymorphic type. Not persisted."""

    type: PolymorphicType
    targets: list[DiscoveryTarget] = Field(default_factory=list)
    owner_tables: list[str] = Field(default_factory=list)
    id_field: str
    type_field: str
    metadata: DiscoveryMetadata = Field(default_factory=DiscoveryMetadata)


class PolymorphicColumnPair(BaseModel):
    """An owner table carrying a polymorphic column pair."""

    source_table: str
    polymorphic_type: PolymorphicType
    id_field: str
    type_field: str
    target_tables: list[str] = Field(default_factory=list)


class InconsistencyKind(str, Enum):
    MISSING_TYPE_COLUMN = "missing_type_column"
    MISSING_ID_COLUMN = "missing_id_column"
    INCONSISTENT_TYPING = "inconsistent_typing"


class SchemaInconsistency(BaseModel):
    table: str
    column: str
    kind: InconsistencyKind
    message: str


class SchemaAnalysis(BaseModel):
    """Schema-wide report of polymorphic column pairs."""

    total_tables: int = 0
    polymorphic_relationships: list[PolymorphicColumnPair] = Field(default_factory=list)
    polymorphic_coverage: float = 0.0
    inconsistencies: list[SchemaInconsistency] = Field(default_factory=list)


class SchemaComplexity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ComplexityMetrics(BaseModel):
    total_relationships: int = 0
    polymorphic_relationships: int = 0
    polymorphic_percentage: float = 0.0
    average_targets_per_type: float = 0.0
    schema_complexity: SchemaComplexity = SchemaComplexity.LOW


# =============================================================================
# Query Results
# =============================================================================


class Page(BaseModel):
    """One page of query results."""

    data: list[dict[str, Any]] = Field(default_factory=list)
    page: int
    per_page: int
    total: int
    total_pages: int


# =============================================================================
# Config Changes
# =============================================================================


class ConfigChangeKind(str, Enum):
    """What a committed tracker mutation did."""

    TYPE_ADDED = "type_added"
    TARGET_ADDED = "target_added"
    TARGET_UPDATED = "target_updated"
    TARGET_DEACTIVATED = "target_deactivated"
    TARGET_REMOVED = "target_removed"
    CONFIG_REPLACED = "config_replaced"


class ConfigChange(BaseModel):
    """Emitted to tracker listeners after a mutation has been saved."""

    kind: ConfigChangeKind
    polymorphic_type: PolymorphicType | None = None
    table_name: str | None = None
    before: TargetMetadata | None = None
    after: TargetMetadata | None = None
    occurred_at: datetime = Field(default_factory=utc_now)


# =============================================================================
# Export / Import
# =============================================================================

EXPORT_FORMAT_VERSION = "1.0"


class ExportMetadata(BaseModel):
    exported_by: str = "polymorphic-config-store"
    description: str | None = None
    tags: list[str] = Field(default_factory=list)


class ConfigExport(BaseModel):
    """Portable copy of a config, as written by export_config()."""

    version: str = EXPORT_FORMAT_VERSION
    exported_at: datetime = Field(default_factory=utc_now)
    config: PolymorphicConfig
    metadata: ExportMetadata = Field(default_factory=ExportMetadata)


class StorageStats(BaseModel):
    """Serialized sizes of a config document and its backups, in bytes."""

    config_size: int = 0
    backups_size: int = 0
    total_size: int = 0
    backup_count: int = 0


# =============================================================================
# Schema Evolution
# =============================================================================


class SchemaChangeType(str, Enum):
    ADD_ASSOCIATION = "add_association"
    REMOVE_ASSOCIATION = "remove_association"
    MODIFY_ASSOCIATION = "modify_association"
    ADD_TARGET = "add_target"
    REMOVE_TARGET = "remove_target"
    MODIFY_TARGET = "modify_target"


class SchemaChange(BaseModel):
    """One difference between two config versions."""

    type: SchemaChangeType
    target: str = Field(..., description="Polymorphic type, or 'type.table' for targets")
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class SchemaVersion(BaseModel):
    """A recorded config snapshot and the changes that led to it."""

    version: str
    created_at: datetime = Field(default_factory=utc_now)
    changes: list[SchemaChange] = Field(default_factory=list)
    config: PolymorphicConfig


class MigrationOperationType(str, Enum):
    CREATE_ASSOCIATION = "create_association"
    UPDATE_ASSOCIATION = "update_association"
    DELETE_ASSOCIATION = "delete_association"


class MigrationOperation(BaseModel):
    type: MigrationOperationType
    polymorphic_type: PolymorphicType
    association: AssociationConfig | None = None


class SchemaMigration(BaseModel):
    """Operations turning one recorded version into another."""

    from_version: str
    to_version: str
    operations: list[MigrationOperation] = Field(default_factory=list)


class VersionHistory(BaseModel):
    """Persisted form of the version history."""

    current_version: str | None = None
    versions: list[SchemaVersion] = Field(default_factory=list)


# =============================================================================
# Query Cache
# =============================================================================


class InvalidationReason(str, Enum):
    DATA_CHANGE = "data-change"
    TTL_EXPIRE = "ttl-expire"
    MANUAL = "manual"
    MEMORY_PRESSURE = "memory-pressure"


class CacheInvalidationEvent(BaseModel):
    reason: InvalidationReason
    tables: list[str] = Field(default_factory=list)
    polymorphic_types: list[PolymorphicType] = Field(default_factory=list)
    keys: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utc_now)


class CacheWarmingStats(BaseModel):
    warmed_queries: int = 0
    warming_hits: int = 0
    last_warmed: datetime | None = None


class CacheMetrics(BaseModel):
    """Query cache counters."""

    hits: int = 0
    misses: int = 0
    hit_ratio: float = 0.0
    average_query_time_ms: float = 0.0
    size: int = 0
    memory_usage_mb: float = 0.0
    evictions: int = 0
    warming: CacheWarmingStats = Field(default_factory=CacheWarmingStats)


# =============================================================================
# Monitoring
# =============================================================================


class PerformanceMetric(BaseModel):
    timestamp: datetime = Field(default_factory=utc_now)
    operation: str
    duration_ms: float
    success: bool = True
    polymorphic_type: PolymorphicType | None = None
    record_count: int | None = None
    error: str | None = None


class UsageStats(BaseModel):
    """Per polymorphic type query usage."""

    polymorphic_type: PolymorphicType
    query_count: int = 0
    avg_response_time_ms: float = 0.0
    error_rate: float = 0.0
    popular_targets: dict[str, int] = Field(default_factory=dict)
    last_used: datetime | None = None


class AlertType(str, Enum):
    MISSING_TYPES = "missing_types"
    PERFORMANCE_DEGRADATION = "performance_degradation"
    HIGH_ERROR_RATE = "high_error_rate"
    UNUSED_ASSOCIATION = "unused_association"
    NEW_TYPE_DISCOVERED = "new_type_discovered"
    SCHEMA_EVOLUTION = "schema_evolution"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SchemaAlert(BaseModel):
    id: str
    type: AlertType
    severity: AlertSeverity
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)
    resolved: bool = False
    resolved_at: datetime | None = None
    resolved_by: str | None = None


class EvolutionEventType(str, Enum):
    ASSOCIATION_ADDED = "association_added"
    ASSOCIATION_REMOVED = "association_removed"
    TYPE_ADDED = "type_added"
    TYPE_REMOVED = "type_removed"
    CONFIG_UPDATED = "config_updated"


class EvolutionSource(str, Enum):
    MANUAL = "manual"
    AUTO_DISCOVERY = "auto_discovery"
    SYNC = "sync"
    MIGRATION = "migration"


class ChangeImpact(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class EvolutionEvent(BaseModel):
    id: str
    timestamp: datetime = Field(default_factory=utc_now)
    type: EvolutionEventType
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    source: EvolutionSource = EvolutionSource.MANUAL
    impact: ChangeImpact = ChangeImpact.MEDIUM


class MonitoringOverview(BaseModel):
    total_queries: int = 0
    avg_response_time_ms: float = 0.0
    error_rate: float = 0.0
    configurations_updated: int = 0
    alerts_generated: int = 0


class MonitoringReport(BaseModel):
    period_start: datetime
    period_end: datetime
    overview: MonitoringOverview
    top_associations: list[UsageStats] = Field(default_factory=list)
    performance_trends: list[PerformanceMetric] = Field(default_factory=list)
    evolution_events: list[EvolutionEvent] = Field(default_factory=list)
    active_alerts: list[SchemaAlert] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
