"""
Polymorphic relationship registry.

Bridges tracker state into a generic relationship registry that only
understands single-target relationships. One polymorphic type fans out
into one DirectRelationship per valid target, e.g. for activity_logs:

    loggableJob  -> jobs   (loggable_type = 'Job')
    loggableTask -> tasks  (loggable_type = 'Task')

Every registration is remembered and rebuilt whenever the target set of
its type changes, whether through this registry or directly on the
tracker (the registry listens for tracker changes). Stale relationships
are removed and new targets appear without re-registering by hand.

Construction order: PolymorphicTracker -> PolymorphicRegistry -> (optional)
PolymorphicDiscovery.
"""

import logging
from dataclasses import dataclass
from typing import Any, Literal

from packages.polymorphic.exceptions import NotInitializedError
from packages.polymorphic.naming import (
    generate_model_name,
    target_relationship_name,
    to_camel_case,
)
from packages.polymorphic.relationships import (
    DirectRelationship,
    PolymorphicRelationship,
    RelationshipRegistry,
    RelationshipType,
)
from packages.polymorphic.schemas import (
    ConfigChange,
    ConfigChangeKind,
    ConfigExport,
    PolymorphicConfig,
    PolymorphicType,
    TargetMetadata,
    TargetSource,
)
from packages.polymorphic.tracker import PolymorphicTracker

logger = logging.getLogger(__name__)


def is_polymorphic_relationship(
    descriptor: DirectRelationship | PolymorphicRelationship | None,
) -> bool:
    """True if the descriptor is a polymorphic (multi-target) relationship."""
    match descriptor:
        case PolymorphicRelationship():
            return True
        case _:
            return False


@dataclass(frozen=True)
class _Registration:
    kind: Literal["polymorphic", "targets", "reverse"]
    polymorphic_type: str
    source_table: str
    id_field: str
    type_field: str
    relationship_name: str | None = None
    target_table: str | None = None
    include_inactive: bool = False


class PolymorphicRegistry:
    """Expose tracked polymorphic associations as concrete relationships."""

    def __init__(self, tracker: PolymorphicTracker, relationships: RelationshipRegistry):
        self._tracker = tracker
        self._relationships = relationships
        self._initialized = False
        self._registered: dict[_Registration, set[tuple[str, str]]] = {}
        tracker.add_listener(self._on_config_change)

    @property
    def tracker(self) -> PolymorphicTracker:
        return self._tracker

    @property
    def relationships(self) -> RelationshipRegistry:
        return self._relationships

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Initialize the underlying tracker. Later calls are no-ops."""
        if self._initialized:
            return
        await self._tracker.initialize()
        self._initialized = True
        logger.info("PolymorphicRegistry initialized")

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError("PolymorphicRegistry")

    # =========================================================================
    # Registration
    # =========================================================================

    def register_polymorphic_relationship(
        self,
        source_table: str,
        relationship_name: str,
        polymorphic_type: PolymorphicType,
        id_field: str,
        type_field: str,
        *,
        include_inactive: bool = False,
    ) -> PolymorphicRelationship:
        """Register one relationship carrying the full valid-target list."""
        self._ensure_initialized()
        registration = _Registration(
            kind="polymorphic",
            polymorphic_type=polymorphic_type,
            source_table=source_table,
            id_field=id_field,
            type_field=type_field,
            relationship_name=relationship_name,
            include_inactive=include_inactive,
        )
        descriptors = self._apply(registration)
        return descriptors[0]

    def register_polymorphic_target_relationships(
        self,
        source_table: str,
        polymorphic_type: PolymorphicType,
        id_field: str,
        type_field: str,
        *,
        include_inactive: bool = False,
    ) -> list[str]:
        """
        Register one concrete belongs-to relationship per valid target.

        Targets without metadata or an empty model name are skipped.

        Returns:
            Names of the registered relationships (e.g. ["loggableJob", "loggableTask"])
        """
        self._ensure_initialized()
        registration = _Registration(
            kind="targets",
            polymorphic_type=polymorphic_type,
            source_table=source_table,
            id_field=id_field,
            type_field=type_field,
            include_inactive=include_inactive,
        )
        return [descriptor.name for descriptor in self._apply(registration)]

    def register_reverse_polymorphic_relationships(
        self,
        target_table: str,
        polymorphic_type: PolymorphicType,
        source_table: str,
        id_field: str,
        *,
        type_field: str | None = None,
        relationship_name: str | None = None,
    ) -> str | None:
        """
        Register target_table has-many source_table through the polymorphic pair.

        The relationship name defaults to the camelCased owner table
        (activity_logs -> activityLogs).

        Returns:
            The relationship name, or None if target_table is not an active
            target of polymorphic_type
        """
        self._ensure_initialized()
        registration = _Registration(
            kind="reverse",
            polymorphic_type=polymorphic_type,
            source_table=source_table,
            id_field=id_field,
            type_field=type_field or f"{polymorphic_type}_type",
            relationship_name=relationship_name,
            target_table=target_table,
        )
        descriptors = self._apply(registration)
        if not descriptors:
            logger.warning(
                f"{target_table} is not an active target of {polymorphic_type}; "
                "reverse relationship not registered"
            )
            return None
        return descriptors[0].name

    def _build(
        self, registration: _Registration
    ) -> list[DirectRelationship | PolymorphicRelationship]:
        tracker = self._tracker
        polymorphic_type = registration.polymorphic_type

        if registration.kind == "polymorphic":
            return [
                PolymorphicRelationship(
                    name=registration.relationship_name or polymorphic_type,
                    source_table=registration.source_table,
                    polymorphic_type=polymorphic_type,
                    id_field=registration.id_field,
                    type_field=registration.type_field,
                    valid_targets=tuple(
                        tracker.get_valid_targets(
                            polymorphic_type, include_inactive=registration.include_inactive
                        )
                    ),
                )
            ]

        if registration.kind == "targets":
            descriptors: list[DirectRelationship | PolymorphicRelationship] = []
            for table_name in tracker.get_valid_targets(
                polymorphic_type, include_inactive=registration.include_inactive
            ):
                metadata = tracker.get_target_metadata(polymorphic_type, table_name)
                if metadata is None or not metadata.model_name:
                    continue
                descriptors.append(
                    DirectRelationship(
                        name=target_relationship_name(polymorphic_type, metadata.model_name),
                        source_table=registration.source_table,
                        type=RelationshipType.BELONGS_TO,
                        model=metadata.model_name,
                        target_table=table_name,
                        foreign_key=registration.id_field,
                        discriminator_column=registration.type_field,
                        discriminator_value=metadata.model_name,
                        polymorphic_type=polymorphic_type,
                    )
                )
            return descriptors

        target_table = registration.target_table or ""
        metadata = tracker.get_target_metadata(polymorphic_type, target_table)
        if metadata is None or not metadata.active or not metadata.model_name:
            return []
        return [
            DirectRelationship(
                name=registration.relationship_name or to_camel_case(registration.source_table),
                source_table=target_table,
                type=RelationshipType.HAS_MANY,
                model=generate_model_name(registration.source_table),
                target_table=registration.source_table,
                foreign_key=registration.id_field,
                discriminator_column=registration.type_field,
                discriminator_value=metadata.model_name,
                polymorphic_type=polymorphic_type,
            )
        ]

    def _apply(
        self, registration: _Registration
    ) -> list[DirectRelationship | PolymorphicRelationship]:
        descriptors = self._build(registration)
        current = {(descriptor.source_table, descriptor.name) for descriptor in descriptors}

        for table, name in self._registered.get(registration, set()) - current:
            self._relationships.unregister(table, name)
            logger.info(f"Unregistered stale relationship {table}.{name}")

        for descriptor in descriptors:
            self._relationships.register(descriptor)

        self._registered[registration] = current
        logger.debug(
            f"Registered {len(descriptors)} {registration.kind} relationships "
            f"for {registration.polymorphic_type}"
        )
        return descriptors

    def _resync(self, polymorphic_type: PolymorphicType | None) -> None:
        for registration in list(self._registered):
            if registration.polymorphic_type == polymorphic_type:
                self._apply(registration)

    def _resync_all(self) -> None:
        for registration in list(self._registered):
            self._apply(registration)

    def _on_config_change(self, change: ConfigChange) -> None:
        if change.kind == ConfigChangeKind.CONFIG_REPLACED:
            self._resync_all()
        else:
            self._resync(change.polymorphic_type)

    # =========================================================================
    # Tracker Pass-throughs
    # =========================================================================

    def get_valid_targets(
        self,
        polymorphic_type: PolymorphicType,
        *,
        include_inactive: bool = False,
    ) -> list[str]:
        self._ensure_initialized()
        return self._tracker.get_valid_targets(polymorphic_type, include_inactive=include_inactive)

    def is_valid_target(
        self,
        polymorphic_type: PolymorphicType,
        table_name: str,
        *,
        include_inactive: bool = False,
    ) -> bool:
        self._ensure_initialized()
        return self._tracker.is_valid_target(
            polymorphic_type, table_name, include_inactive=include_inactive
        )

    async def add_polymorphic_target(
        self,
        polymorphic_type: PolymorphicType,
        table_name: str,
        model_name: str,
        *,
        source: TargetSource = TargetSource.MANUAL,
    ) -> TargetMetadata:
        """Add a target and refresh every registration of its type."""
        self._ensure_initialized()
        try:
            return await self._tracker.add_target(
                polymorphic_type, table_name, model_name, source=source
            )
        finally:
            self._resync(polymorphic_type)

    async def remove_polymorphic_target(
        self,
        polymorphic_type: PolymorphicType,
        table_name: str,
    ) -> bool:
        self._ensure_initialized()
        try:
            return await self._tracker.remove_target(polymorphic_type, table_name)
        finally:
            self._resync(polymorphic_type)

    async def deactivate_polymorphic_target(
        self,
        polymorphic_type: PolymorphicType,
        table_name: str,
    ) -> bool:
        self._ensure_initialized()
        try:
            return await self._tracker.deactivate_target(polymorphic_type, table_name)
        finally:
            self._resync(polymorphic_type)

    async def restore_backup(self, backup_key: str) -> PolymorphicConfig:
        """Restore a tracker backup and rebuild every registration."""
        self._ensure_initialized()
        try:
            return await self._tracker.restore_backup(backup_key)
        finally:
            self._resync_all()

    async def import_config(self, export: ConfigExport | dict[str, Any]) -> PolymorphicConfig:
        self._ensure_initialized()
        try:
            return await self._tracker.import_config(export)
        finally:
            self._resync_all()

    async def replace_config(self, config: PolymorphicConfig) -> PolymorphicConfig:
        """Replace the tracker config (e.g. a rolled-back version) and resync."""
        self._ensure_initialized()
        try:
            return await self._tracker.replace_config(config)
        finally:
            self._resync_all()

    # =========================================================================
    # Reflection
    # =========================================================================

    def is_polymorphic_relationship(
        self,
        descriptor: DirectRelationship | PolymorphicRelationship | None,
    ) -> bool:
        return is_polymorphic_relationship(descriptor)

    def get_polymorphic_relationships(self, table: str) -> list[PolymorphicRelationship]:
        """Polymorphic descriptors registered on a table."""
        self._ensure_initialized()
        found = []
        for name in self._relationships.get_valid_relationships(table):
            descriptor = self._relationships.get_relationship_metadata(table, name)
            if isinstance(descriptor, PolymorphicRelationship):
                found.append(descriptor)
        return found

    def discover_polymorphic_relationships(self) -> list[PolymorphicRelationship]:
        """Every polymorphic descriptor in the generic registry. Never raises."""
        try:
            found = []
            for table in self._relationships.get_tables():
                for name in self._relationships.get_valid_relationships(table):
                    descriptor = self._relationships.get_relationship_metadata(table, name)
                    if is_polymorphic_relationship(descriptor):
                        found.append(descriptor)
            return found
        except Exception as e:
            logger.warning(f"Failed to scan registered relationships: {e}")
            return []
