"""
Polymorphic target tracker.

Single source of truth for which tables each polymorphic type may point
at. State lives in memory as a PolymorphicConfig and is written through
to a PolymorphicConfigStore on every mutation.

Usage:
    tracker = PolymorphicTracker(PolymorphicConfigStore(MemoryDocumentStore()))
    await tracker.initialize()
    await tracker.add_target("loggable", "jobs", "Job")
    tracker.get_valid_targets("loggable")  # ["jobs"]

Listeners added with add_listener() receive a ConfigChange for every
committed mutation; the registry, query cache and monitoring use this to
stay in step with the tracker.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from packages.polymorphic.exceptions import (
    NotInitializedError,
    PolymorphicValidationError,
)
from packages.polymorphic.persistence import PolymorphicConfigStore
from packages.polymorphic.schemas import (
    AssociationConfig,
    ConfigChange,
    ConfigChangeKind,
    ConfigExport,
    PolymorphicConfig,
    PolymorphicType,
    StorageStats,
    TargetMetadata,
    TargetSource,
    ValidationIssue,
    ValidationMetadata,
    ValidationResult,
    ValidationSeverity,
    utc_now,
)
from packages.shared.storage.base import DocumentStore

logger = logging.getLogger(__name__)

ConfigListener = Callable[[ConfigChange], None]
Mutation = Callable[[PolymorphicConfig], list[ConfigChange]]


class PolymorphicTracker:
    """
    Tracks valid targets per polymorphic type.

    Every mutation runs under one lock: it is applied to a deep copy of the
    current config, the copy is saved, and only then does it replace the
    in-memory config. A failed save leaves the tracker unchanged, and
    overlapping un-awaited mutations are applied one after another.
    """

    def __init__(
        self,
        store: PolymorphicConfigStore | DocumentStore,
        config_id: str | None = None,
        default_types: dict[str, str] | None = None,
    ):
        """
        Args:
            store: Config store (a bare DocumentStore is wrapped)
            config_id: Persisted document key (defaults to settings)
            default_types: type -> description created on first initialize
                (defaults to settings)
        """
        if isinstance(store, DocumentStore):
            store = PolymorphicConfigStore(store)

        if config_id is None or default_types is None:
            from apps.api.config import get_settings

            settings = get_settings()
            config_id = config_id or settings.polymorphic_config_id
            if default_types is None:
                default_types = settings.default_polymorphic_types

        self._store = store
        self._config_id = config_id
        self._default_types = dict(default_types)
        self._config: PolymorphicConfig | None = None
        self._init_lock = asyncio.Lock()
        self._save_lock = asyncio.Lock()
        self._listeners: list[ConfigListener] = []

    @property
    def config_id(self) -> str:
        return self._config_id

    @property
    def store(self) -> PolymorphicConfigStore:
        return self._store

    @property
    def is_initialized(self) -> bool:
        return self._config is not None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        """
        Load the persisted config, or create and save the default one.

        Safe to call repeatedly and concurrently; only the first call does work.
        """
        if self._config is not None:
            return

        async with self._init_lock:
            if self._config is not None:
                return

            config = await self._store.load(self._config_id)
            if config is not None:
                self._config = config
                logger.info(
                    f"Loaded polymorphic config {self._config_id}: "
                    f"{config.metadata.total_associations} associations, "
                    f"{config.metadata.total_targets} targets"
                )
                return

            config = self._create_default_config()
            await self._store.save(self._config_id, config)
            self._config = config
            logger.info(
                f"Created default polymorphic config {self._config_id} "
                f"with types: {', '.join(self._default_types)}"
            )

    def _create_default_config(self) -> PolymorphicConfig:
        config = PolymorphicConfig(
            associations={
                type_name: AssociationConfig(type=type_name, description=description)
                for type_name, description in self._default_types.items()
            }
        )
        config.refresh_totals()
        return config

    def _require_config(self) -> PolymorphicConfig:
        if self._config is None:
            raise NotInitializedError("PolymorphicTracker")
        return self._config

    # =========================================================================
    # Change Listeners
    # =========================================================================

    def add_listener(self, listener: ConfigListener) -> None:
        """Call listener with every committed ConfigChange."""
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: ConfigListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, changes: list[ConfigChange]) -> None:
        for change in changes:
            for listener in list(self._listeners):
                try:
                    listener(change)
                except Exception:
                    # The change is already saved
                    logger.exception(f"Config listener failed on {change.kind.value}")

    async def _commit(self, mutation: Mutation) -> list[ConfigChange]:
        """
        Apply mutation to a copy of the config and swap it in once saved.

        A mutation returning no changes skips the save.
        """
        async with self._save_lock:
            candidate = self._require_config().model_copy(deep=True)
            changes = mutation(candidate)
            if not changes:
                return []
            candidate.refresh_totals()
            await self._store.save(self._config_id, candidate)
            self._config = candidate

        self._notify(changes)
        return changes

    async def _replace(self, load: Callable[[], Any]) -> PolymorphicConfig:
        """Swap in a whole config produced by load() under the save lock."""
        self._require_config()
        async with self._save_lock:
            config = await load()
            self._config = config

        self._notify([ConfigChange(kind=ConfigChangeKind.CONFIG_REPLACED)])
        return config.model_copy(deep=True)

    # =========================================================================
    # Target Management
    # =========================================================================

    async def add_target(
        self,
        polymorphic_type: PolymorphicType,
        table_name: str,
        model_name: str,
        *,
        source: TargetSource = TargetSource.MANUAL,
    ) -> TargetMetadata:
        """
        Add or refresh a valid target.

        The first insertion stamps discovered_at. Every call refreshes
        last_verified_at and reactivates the target. Unknown types get a
        new association. Empty table or model names are accepted here and
        reported by validate().

        Raises:
            PolymorphicValidationError: If polymorphic_type is blank
        """
        self._require_config()
        if not polymorphic_type or not polymorphic_type.strip():
            raise PolymorphicValidationError(
                "Polymorphic type must be a non-empty string",
                errors=[{"field": "polymorphic_type", "value": polymorphic_type}],
            )

        def mutation(config: PolymorphicConfig) -> list[ConfigChange]:
            changes = []
            now = utc_now()
            association = config.associations.get(polymorphic_type)
            if association is None:
                association = AssociationConfig(
                    type=polymorphic_type,
                    description=self._default_types.get(
                        polymorphic_type, f"Polymorphic association '{polymorphic_type}'"
                    ),
                )
                config.associations[polymorphic_type] = association
                changes.append(
                    ConfigChange(kind=ConfigChangeKind.TYPE_ADDED, polymorphic_type=polymorphic_type)
                )

            before = association.valid_targets.get(table_name)
            if before is None:
                target = TargetMetadata(
                    model_name=model_name,
                    table_name=table_name,
                    discovered_at=now,
                    last_verified_at=now,
                    active=True,
                    source=source,
                )
                kind = ConfigChangeKind.TARGET_ADDED
            else:
                target = before.model_copy(
                    update={
                        "model_name": model_name,
                        "source": source,
                        "last_verified_at": now,
                        "active": True,
                    }
                )
                kind = ConfigChangeKind.TARGET_UPDATED

            association.valid_targets[table_name] = target
            association.metadata.updated_at = now
            changes.append(
                ConfigChange(
                    kind=kind,
                    polymorphic_type=polymorphic_type,
                    table_name=table_name,
                    before=before,
                    after=target.model_copy(),
                )
            )
            return changes

        changes = await self._commit(mutation)
        if changes[0].kind == ConfigChangeKind.TYPE_ADDED:
            logger.info(f"Created polymorphic type {polymorphic_type}")
        if changes[-1].kind == ConfigChangeKind.TARGET_ADDED:
            logger.info(f"Added target {polymorphic_type} -> {table_name} ({model_name})")
        return changes[-1].after.model_copy()

    async def deactivate_target(self, polymorphic_type: PolymorphicType, table_name: str) -> bool:
        """
        Soft-disable a target, keeping its entry.

        Returns:
            True if the target existed
        """

        def mutation(config: PolymorphicConfig) -> list[ConfigChange]:
            before = self._lookup(config, polymorphic_type, table_name)
            if before is None:
                return []
            now = utc_now()
            target = before.model_copy(update={"active": False, "last_verified_at": now})
            association = config.associations[polymorphic_type]
            association.valid_targets[table_name] = target
            association.metadata.updated_at = now
            return [
                ConfigChange(
                    kind=ConfigChangeKind.TARGET_DEACTIVATED,
                    polymorphic_type=polymorphic_type,
                    table_name=table_name,
                    before=before,
                    after=target.model_copy(),
                )
            ]

        if not await self._commit(mutation):
            logger.warning(f"Cannot deactivate missing target {polymorphic_type} -> {table_name}")
            return False
        logger.info(f"Deactivated target {polymorphic_type} -> {table_name}")
        return True

    async def remove_target(self, polymorphic_type: PolymorphicType, table_name: str) -> bool:
        """
        Delete a target outright. Removing a missing target is a no-op.

        Returns:
            True if the target existed
        """

        def mutation(config: PolymorphicConfig) -> list[ConfigChange]:
            association = config.associations.get(polymorphic_type)
            if association is None or table_name not in association.valid_targets:
                return []
            before = association.valid_targets.pop(table_name)
            association.metadata.updated_at = utc_now()
            return [
                ConfigChange(
                    kind=ConfigChangeKind.TARGET_REMOVED,
                    polymorphic_type=polymorphic_type,
                    table_name=table_name,
                    before=before,
                )
            ]

        if not await self._commit(mutation):
            logger.warning(f"Cannot remove missing target {polymorphic_type} -> {table_name}")
            return False
        logger.info(f"Removed target {polymorphic_type} -> {table_name}")
        return True

    # =========================================================================
    # Backups, Export and Import
    # =========================================================================

    async def create_backup(self) -> str | None:
        """Snapshot the persisted config. Returns the backup key."""
        self._require_config()
        async with self._save_lock:
            return await self._store.create_backup(self._config_id)

    async def list_backups(self) -> list[str]:
        return await self._store.list_backups(self._config_id)

    async def restore_backup(self, backup_key: str) -> PolymorphicConfig:
        """Replace current state with a backup and persist it."""
        return await self._replace(
            lambda: self._store.restore_backup(self._config_id, backup_key)
        )

    async def replace_config(self, config: PolymorphicConfig) -> PolymorphicConfig:
        """Persist config as the whole new state (used by version rollback)."""
        replacement = config.model_copy(deep=True)
        replacement.refresh_totals()

        async def save() -> PolymorphicConfig:
            await self._store.save(self._config_id, replacement)
            return replacement

        return await self._replace(save)

    def export_config(
        self,
        *,
        description: str | None = None,
        tags: list[str] | None = None,
    ) -> ConfigExport:
        return self._store.export_config(
            self._require_config(), description=description, tags=tags
        )

    async def import_config(self, export: ConfigExport | dict[str, Any]) -> PolymorphicConfig:
        """Replace current state with exported data; the old state is backed up."""
        return await self._replace(lambda: self._store.import_config(self._config_id, export))

    async def get_storage_stats(self) -> StorageStats:
        return await self._store.get_storage_stats(self._config_id)

    # =========================================================================
    # Queries
    # =========================================================================

    @staticmethod
    def _lookup(
        config: PolymorphicConfig,
        polymorphic_type: PolymorphicType,
        table_name: str,
    ) -> TargetMetadata | None:
        association = config.associations.get(polymorphic_type)
        if association is None:
            return None
        return association.valid_targets.get(table_name)

    def get_valid_targets(
        self,
        polymorphic_type: PolymorphicType,
        *,
        include_inactive: bool = False,
    ) -> list[str]:
        """Return target table names; unknown types give an empty list."""
        config = self._require_config()
        association = config.associations.get(polymorphic_type)
        if association is None:
            logger.warning(f"Unknown polymorphic type {polymorphic_type}")
            return []
        return [
            table_name
            for table_name, target in association.valid_targets.items()
            if include_inactive or target.active
        ]

    def is_valid_target(
        self,
        polymorphic_type: PolymorphicType,
        table_name: str,
        *,
        include_inactive: bool = False,
    ) -> bool:
        target = self._lookup(self._require_config(), polymorphic_type, table_name)
        if target is None:
            return False
        return include_inactive or target.active

    def get_target_metadata(
        self,
        polymorphic_type: PolymorphicType,
        table_name: str,
    ) -> TargetMetadata | None:
        target = self._lookup(self._require_config(), polymorphic_type, table_name)
        return target.model_copy() if target is not None else None

    def find_target_by_model(
        self,
        polymorphic_type: PolymorphicType,
        model_name: str,
        *,
        include_inactive: bool = False,
    ) -> TargetMetadata | None:
        """Look up a target by the model name stored in the _type column."""
        association = self._require_config().associations.get(polymorphic_type)
        if association is None:
            return None
        for target in association.valid_targets.values():
            if target.model_name == model_name and (include_inactive or target.active):
                return target.model_copy()
        return None

    def get_association_config(self, polymorphic_type: PolymorphicType) -> AssociationConfig | None:
        association = self._require_config().associations.get(polymorphic_type)
        return association.model_copy(deep=True) if association is not None else None

    def get_polymorphic_types(self) -> list[PolymorphicType]:
        return list(self._require_config().associations)

    def get_config(self) -> PolymorphicConfig:
        """Return a deep copy of the whole config."""
        return self._require_config().model_copy(deep=True)

    # =========================================================================
    # Validation
    # =========================================================================

    def validate(self, *, include_inactive: bool = False) -> ValidationResult:
        """
        Check every association and target.

        Errors: empty model_name or table_name, or a target stored under a
        key that differs from its table_name. Warnings: associations with no
        targets, and inactive targets.

        Args:
            include_inactive: Also check the fields of inactive targets;
                by default they are only reported as inactive
        """
        config = self._require_config()
        errors: list[ValidationIssue] = []
        warnings: list[ValidationIssue] = []
        total_checked = 0
        failed_checks = 0

        for type_name, association in config.associations.items():
            total_checked += 1
            if not association.valid_targets:
                warnings.append(
                    ValidationIssue(
                        type=type_name,
                        message=f"Polymorphic type '{type_name}' has no valid targets",
                        severity=ValidationSeverity.WARNING,
                    )
                )

            for key, target in association.valid_targets.items():
                total_checked += 1
                if not target.active:
                    warnings.append(
                        ValidationIssue(
                            type=type_name,
                            target=key,
                            message=f"Target '{key}' of '{type_name}' is inactive",
                            severity=ValidationSeverity.WARNING,
                        )
                    )
                    if not include_inactive:
                        continue

                target_errors: list[str] = []
                if not target.model_name or not target.model_name.strip():
                    target_errors.append(f"Target '{key}' of '{type_name}' has an empty model_name")
                if not target.table_name or not target.table_name.strip():
                    target_errors.append(f"Target '{key}' of '{type_name}' has an empty table_name")
                elif target.table_name != key:
                    target_errors.append(
                        f"Target key '{key}' of '{type_name}' does not match "
                        f"table_name '{target.table_name}'"
                    )

                if target_errors:
                    failed_checks += 1
                    errors.extend(
                        ValidationIssue(type=type_name, target=key, message=message)
                        for message in target_errors
                    )

        if errors:
            logger.warning(f"Polymorphic config validation found {len(errors)} errors")

        return ValidationResult(
            valid=not errors,
            errors=errors,
            warnings=warnings,
            metadata=ValidationMetadata(
                total_checked=total_checked,
                passed_checks=total_checked - failed_checks,
                failed_checks=failed_checks,
            ),
        )
