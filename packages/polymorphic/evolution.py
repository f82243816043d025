"""
Version history for the polymorphic configuration.

SchemaEvolution records snapshots of the config next to its backups, under
"<config_id>.versions". Each version lists the changes that separate it
from its predecessor. A version can be diffed against another into a
migration, or rolled back to through the tracker or registry so
relationship registrations follow.

Usage:
    evolution = SchemaEvolution(store, config_id=tracker.config_id)
    await evolution.initialize(tracker.get_config())
    ...
    await evolution.create_version(tracker.get_config())
    await evolution.rollback_to_version(version_id, registry)
"""

import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Protocol

from pydantic import ValidationError as PydanticValidationError

from packages.polymorphic.exceptions import ConfigStoreError
from packages.polymorphic.schemas import (
    AssociationConfig,
    MigrationOperation,
    MigrationOperationType,
    PolymorphicConfig,
    SchemaChange,
    SchemaChangeType,
    SchemaMigration,
    SchemaVersion,
    VersionHistory,
    utc_now,
)
from packages.shared.storage.base import DocumentStore

logger = logging.getLogger(__name__)

VERSIONS_SUFFIX = ".versions"

# Target fields whose change counts as a modification
_TRACKED_TARGET_FIELDS = ("model_name", "active", "source")


class ConfigReplacer(Protocol):
    """PolymorphicTracker or PolymorphicRegistry."""

    async def replace_config(self, config: PolymorphicConfig) -> PolymorphicConfig: ...


def _signature(association: AssociationConfig) -> tuple:
    """Association content that matters for migrations; timestamps excluded."""
    return (
        association.description,
        {
            table_name: tuple(getattr(target, name) for name in _TRACKED_TARGET_FIELDS)
            for table_name, target in association.valid_targets.items()
        },
    )


def detect_changes(old: PolymorphicConfig, new: PolymorphicConfig) -> list[SchemaChange]:
    """Association- and target-level differences from old to new."""
    changes: list[SchemaChange] = []

    for polymorphic_type, association in new.associations.items():
        previous = old.associations.get(polymorphic_type)
        if previous is None:
            changes.append(
                SchemaChange(
                    type=SchemaChangeType.ADD_ASSOCIATION,
                    target=polymorphic_type,
                    details={"targets": sorted(association.valid_targets)},
                )
            )
            continue

        if previous.description != association.description:
            changes.append(
                SchemaChange(
                    type=SchemaChangeType.MODIFY_ASSOCIATION,
                    target=polymorphic_type,
                    details={"description": [previous.description, association.description]},
                )
            )

        for table_name, target in association.valid_targets.items():
            before = previous.valid_targets.get(table_name)
            if before is None:
                changes.append(
                    SchemaChange(
                        type=SchemaChangeType.ADD_TARGET,
                        target=f"{polymorphic_type}.{table_name}",
                        details={"model_name": target.model_name},
                    )
                )
                continue

            modified = {
                name: [getattr(before, name), getattr(target, name)]
                for name in _TRACKED_TARGET_FIELDS
                if getattr(before, name) != getattr(target, name)
            }
            if modified:
                changes.append(
                    SchemaChange(
                        type=SchemaChangeType.MODIFY_TARGET,
                        target=f"{polymorphic_type}.{table_name}",
                        details=modified,
                    )
                )

        for table_name in previous.valid_targets.keys() - association.valid_targets.keys():
            changes.append(
                SchemaChange(
                    type=SchemaChangeType.REMOVE_TARGET,
                    target=f"{polymorphic_type}.{table_name}",
                )
            )

    for polymorphic_type in old.associations.keys() - new.associations.keys():
        changes.append(
            SchemaChange(type=SchemaChangeType.REMOVE_ASSOCIATION, target=polymorphic_type)
        )

    return changes


def apply_migration(config: PolymorphicConfig, migration: SchemaMigration) -> PolymorphicConfig:
    """Return a copy of config with the migration's operations applied."""
    migrated = config.model_copy(deep=True)
    for operation in migration.operations:
        if operation.type == MigrationOperationType.DELETE_ASSOCIATION:
            migrated.associations.pop(operation.polymorphic_type, None)
        elif operation.association is not None:
            migrated.associations[operation.polymorphic_type] = operation.association.model_copy(
                deep=True
            )
    migrated.refresh_totals()
    return migrated


class SchemaEvolution:
    """Persisted, bounded version history of one polymorphic config."""

    def __init__(
        self,
        store: DocumentStore,
        config_id: str,
        max_versions: int = 10,
        *,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._config_id = config_id
        self._key = DocumentStore.validate_key(f"{config_id}{VERSIONS_SUFFIX}")
        self.max_versions = max_versions
        self._clock = clock
        self._history: VersionHistory | None = None
        self._pending: list[SchemaChange] = []
        self._lock = asyncio.Lock()

    async def load(self) -> VersionHistory:
        """
        Load the persisted history (empty if none was saved).

        Raises:
            ConfigStoreError: If the stored history is malformed
        """
        document = await self._store.load(self._key)
        if document is None:
            self._history = VersionHistory()
            return self._history

        try:
            self._history = VersionHistory.model_validate(document)
        except PydanticValidationError as e:
            raise ConfigStoreError(
                f"Stored version history for '{self._config_id}' is malformed: {e}",
                config_id=self._config_id,
            ) from e
        logger.info(f"Loaded {len(self._history.versions)} versions for {self._config_id}")
        return self._history

    async def _require_history(self) -> VersionHistory:
        if self._history is None:
            await self.load()
        return self._history

    async def _save(self) -> None:
        await self._store.save(self._key, self._history.model_dump(mode="json"))

    async def initialize(self, config: PolymorphicConfig) -> SchemaVersion | None:
        """Record config as the first version unless a history exists."""
        history = await self._require_history()
        if history.versions:
            return None
        return await self.create_version(config, changes=[])

    # =========================================================================
    # Versions
    # =========================================================================

    def track_change(self, change: SchemaChange) -> None:
        """Queue a change to be attached to the next version."""
        self._pending.append(change)

    async def create_version(
        self,
        config: PolymorphicConfig,
        changes: list[SchemaChange] | None = None,
    ) -> SchemaVersion:
        """
        Snapshot config as a new current version.

        Args:
            config: Config to record
            changes: Changes to attach. Defaults to the queued changes, or
                the detected difference from the current version if none
                were queued.
        """
        async with self._lock:
            history = await self._require_history()
            if changes is None:
                changes = list(self._pending)
                if not changes:
                    current = self._find(history, history.current_version)
                    previous = current.config if current else PolymorphicConfig()
                    changes = detect_changes(previous, config)
            self._pending.clear()

            now = self._clock()
            version = SchemaVersion(
                version=f"v{now.strftime('%Y%m%dT%H%M%S%f')}-{uuid.uuid4().hex[:6]}",
                created_at=now,
                changes=changes,
                config=config.model_copy(deep=True),
            )
            history.versions.append(version)
            del history.versions[: -self.max_versions]
            history.current_version = version.version
            await self._save()

        logger.info(f"Created config version {version.version} ({len(changes)} changes)")
        return version.model_copy(deep=True)

    @staticmethod
    def _find(history: VersionHistory, version_id: str | None) -> SchemaVersion | None:
        for version in history.versions:
            if version.version == version_id:
                return version
        return None

    async def get_version(self, version_id: str) -> SchemaVersion | None:
        version = self._find(await self._require_history(), version_id)
        return version.model_copy(deep=True) if version else None

    async def get_current_version(self) -> SchemaVersion | None:
        history = await self._require_history()
        return await self.get_version(history.current_version) if history.current_version else None

    async def get_version_history(self) -> list[SchemaVersion]:
        """Recorded versions, newest first."""
        history = await self._require_history()
        return [version.model_copy(deep=True) for version in reversed(history.versions)]

    async def _get_required(self, version_id: str) -> SchemaVersion:
        version = await self.get_version(version_id)
        if version is None:
            raise ConfigStoreError(
                f"Version '{version_id}' not found", config_id=self._config_id
            )
        return version

    # =========================================================================
    # Migrations and Rollback
    # =========================================================================

    async def generate_migration(self, from_version: str, to_version: str) -> SchemaMigration:
        """
        Operations turning from_version's config into to_version's.

        Raises:
            ConfigStoreError: If either version is unknown
        """
        source = (await self._get_required(from_version)).config
        target = (await self._get_required(to_version)).config

        operations = []
        for polymorphic_type, association in target.associations.items():
            previous = source.associations.get(polymorphic_type)
            if previous is None:
                operations.append(
                    MigrationOperation(
                        type=MigrationOperationType.CREATE_ASSOCIATION,
                        polymorphic_type=polymorphic_type,
                        association=association,
                    )
                )
            elif _signature(previous) != _signature(association):
                operations.append(
                    MigrationOperation(
                        type=MigrationOperationType.UPDATE_ASSOCIATION,
                        polymorphic_type=polymorphic_type,
                        association=association,
                    )
                )
        for polymorphic_type in sorted(source.associations.keys() - target.associations.keys()):
            operations.append(
                MigrationOperation(
                    type=MigrationOperationType.DELETE_ASSOCIATION,
                    polymorphic_type=polymorphic_type,
                )
            )

        return SchemaMigration(
            from_version=from_version, to_version=to_version, operations=operations
        )

    async def rollback_to_version(
        self, version_id: str, target: ConfigReplacer
    ) -> PolymorphicConfig:
        """
        Make version_id's config live again and mark it current.

        Raises:
            ConfigStoreError: If the version is unknown
        """
        version = await self._get_required(version_id)
        config = await target.replace_config(version.config)

        async with self._lock:
            history = await self._require_history()
            history.current_version = version_id
            await self._save()

        logger.info(f"Rolled back {self._config_id} to version {version_id}")
        return config
