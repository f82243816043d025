"""
Polymorphic association tracking and querying.

Components, in construction order:
- PolymorphicTracker: persisted valid targets per polymorphic type
- PolymorphicRegistry: fans tracked types out into concrete relationships
- PolymorphicDiscovery: proposes types and targets from a live schema
- ChainableQuery: immutable, validated queries over polymorphic rows
- PolymorphicQueryCache: TTL/LRU result cache invalidated by tracker changes
- PolymorphicMonitoring: query metrics, usage statistics and alerts
- SchemaEvolution: config version history, migrations and rollback
"""

from packages.polymorphic.cache import PolymorphicQueryCache, generate_cache_key
from packages.polymorphic.discovery import DiscoveryConfig, PolymorphicDiscovery
from packages.polymorphic.evolution import SchemaEvolution, apply_migration, detect_changes
from packages.polymorphic.exceptions import (
    ConfigStoreError,
    NotInitializedError,
    PolymorphicError,
    PolymorphicValidationError,
    UnknownPolymorphicTypeError,
)
from packages.polymorphic.execution import (
    QueryFactory,
    RowQuery,
    SQLAlchemyQueryFactory,
    SQLAlchemyRowQuery,
)
from packages.polymorphic.introspection import SchemaIntrospector, SQLAlchemySchemaIntrospector
from packages.polymorphic.monitoring import AlertThresholds, PolymorphicMonitoring
from packages.polymorphic.persistence import PolymorphicConfigStore
from packages.polymorphic.query import (
    ChainableQuery,
    EagerLoadConfig,
    QueryConditions,
    create_loggable_query,
    create_notable_query,
    create_parseable_query,
    create_polymorphic_query,
    create_schedulable_query,
    create_target_query,
)
from packages.polymorphic.registry import PolymorphicRegistry, is_polymorphic_relationship
from packages.polymorphic.relationships import (
    DirectRelationship,
    InMemoryRelationshipRegistry,
    PolymorphicRelationship,
    RelationshipRegistry,
    RelationshipType,
)
from packages.polymorphic.schemas import (
    Confidence,
    ConfigChange,
    ConfigChangeKind,
    ConfigExport,
    DiscoveryResult,
    Page,
    PolymorphicConfig,
    TargetMetadata,
    TargetSource,
    ValidationResult,
)
from packages.polymorphic.tracker import PolymorphicTracker

__all__ = [
    "AlertThresholds",
    "ChainableQuery",
    "Confidence",
    "ConfigChange",
    "ConfigChangeKind",
    "ConfigExport",
    "ConfigStoreError",
    "DirectRelationship",
    "DiscoveryConfig",
    "DiscoveryResult",
    "EagerLoadConfig",
    "InMemoryRelationshipRegistry",
    "NotInitializedError",
    "Page",
    "PolymorphicConfig",
    "PolymorphicConfigStore",
    "PolymorphicDiscovery",
    "PolymorphicError",
    "PolymorphicMonitoring",
    "PolymorphicQueryCache",
    "PolymorphicRegistry",
    "PolymorphicRelationship",
    "PolymorphicTracker",
    "PolymorphicValidationError",
    "QueryConditions",
    "QueryFactory",
    "RelationshipRegistry",
    "RelationshipType",
    "RowQuery",
    "SQLAlchemyQueryFactory",
    "SQLAlchemyRowQuery",
    "SQLAlchemySchemaIntrospector",
    "SchemaEvolution",
    "SchemaIntrospector",
    "TargetMetadata",
    "TargetSource",
    "UnknownPolymorphicTypeError",
    "ValidationResult",
    "apply_migration",
    "create_loggable_query",
    "create_notable_query",
    "create_parseable_query",
    "create_polymorphic_query",
    "create_schedulable_query",
    "create_target_query",
    "detect_changes",
    "generate_cache_key",
    "is_polymorphic_relationship",
]
