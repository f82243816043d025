"""
Persistence for the polymorphic configuration document.

Wraps a DocumentStore with PolymorphicConfig (de)serialization, timestamped
backups and portable export/import:

    <config_id>                         current document
    <config_id>.backup.<YYYYmmddTHHMMSSffffff>-<rand>   snapshots, oldest first
"""

import json
import logging
import uuid
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from packages.polymorphic.exceptions import ConfigStoreError
from packages.polymorphic.schemas import (
    ConfigExport,
    ExportMetadata,
    PolymorphicConfig,
    StorageStats,
    utc_now,
)
from packages.shared.storage.base import DocumentStore

logger = logging.getLogger(__name__)

BACKUP_MARKER = ".backup."


class PolymorphicConfigStore:
    """Load, save and back up PolymorphicConfig documents."""

    def __init__(self, store: DocumentStore, max_backups: int = 10):
        self.store = store
        self.max_backups = max_backups

    async def load(self, config_id: str) -> PolymorphicConfig | None:
        """
        Load a config by id.

        Returns:
            The stored config, or None if nothing has been saved yet

        Raises:
            ConfigStoreError: If the stored document is unreadable
        """
        try:
            document = await self.store.load(config_id)
        except ValueError as e:
            raise ConfigStoreError(
                f"Could not read polymorphic config '{config_id}': {e}",
                config_id=config_id,
            ) from e

        if document is None:
            return None

        try:
            return PolymorphicConfig.model_validate(document)
        except PydanticValidationError as e:
            raise ConfigStoreError(
                f"Stored polymorphic config '{config_id}' is malformed: {e}",
                config_id=config_id,
            ) from e

    async def save(self, config_id: str, config: PolymorphicConfig) -> None:
        """Persist a config, replacing the previous version."""
        await self.store.save(config_id, config.model_dump(mode="json"))
        logger.debug(
            f"Saved polymorphic config {config_id} "
            f"({config.metadata.total_associations} associations, "
            f"{config.metadata.total_targets} targets)"
        )

    async def exists(self, config_id: str) -> bool:
        return await self.store.exists(config_id)

    # =========================================================================
    # Backups
    # =========================================================================

    async def create_backup(self, config_id: str) -> str | None:
        """
        Snapshot the current document.

        Returns:
            The backup key, or None if there is nothing to back up
        """
        document = await self.store.load(config_id)
        if document is None:
            return None

        stamp = utc_now().strftime("%Y%m%dT%H%M%S%f")
        backup_key = f"{config_id}{BACKUP_MARKER}{stamp}-{uuid.uuid4().hex[:6]}"
        await self.store.save(backup_key, document)
        logger.info(f"Created backup {backup_key}")

        await self._prune_backups(config_id)
        return backup_key

    async def list_backups(self, config_id: str) -> list[str]:
        """Return backup keys for a config, oldest first."""
        return await self.store.list_keys(prefix=f"{config_id}{BACKUP_MARKER}")

    async def restore_backup(self, config_id: str, backup_key: str) -> PolymorphicConfig:
        """
        Replace the current document with a backup.

        Raises:
            ConfigStoreError: If the backup does not exist or is malformed
        """
        if not backup_key.startswith(f"{config_id}{BACKUP_MARKER}"):
            raise ConfigStoreError(
                f"Backup '{backup_key}' does not belong to config '{config_id}'",
                config_id=config_id,
            )

        config = await self.load(backup_key)
        if config is None:
            raise ConfigStoreError(f"Backup '{backup_key}' not found", config_id=config_id)

        await self.save(config_id, config)
        logger.info(f"Restored {config_id} from {backup_key}")
        return config

    async def _prune_backups(self, config_id: str) -> None:
        backups = await self.list_backups(config_id)
        excess = len(backups) - self.max_backups
        for backup_key in backups[: max(excess, 0)]:
            await self.store.delete(backup_key)
            logger.debug(f"Pruned backup {backup_key}")

    # =========================================================================
    # Export / Import
    # =========================================================================

    def export_config(
        self,
        config: PolymorphicConfig,
        *,
        description: str | None = None,
        tags: list[str] | None = None,
    ) -> ConfigExport:
        """Wrap a deep copy of config with export metadata."""
        return ConfigExport(
            config=config.model_copy(deep=True),
            metadata=ExportMetadata(description=description, tags=tags or []),
        )

    async def import_config(
        self,
        config_id: str,
        export: ConfigExport | dict[str, Any],
    ) -> PolymorphicConfig:
        """
        Replace the stored config with an exported one.

        The current document is backed up first, and the imported config
        is backed up after it has been saved.

        Raises:
            ConfigStoreError: If the export data is malformed
        """
        if not isinstance(export, ConfigExport):
            try:
                export = ConfigExport.model_validate(export)
            except PydanticValidationError as e:
                raise ConfigStoreError(
                    f"Invalid export data for '{config_id}': {e}",
                    config_id=config_id,
                ) from e

        await self.create_backup(config_id)
        config = export.config.model_copy(deep=True)
        await self.save(config_id, config)
        await self.create_backup(config_id)
        logger.info(
            f"Imported polymorphic config {config_id} "
            f"({export.metadata.description or 'no description'})"
        )
        return config

    async def get_storage_stats(self, config_id: str) -> StorageStats:
        """Sizes of the serialized config and its backups."""
        config_size = _document_size(await self.store.load(config_id))
        backups = await self.list_backups(config_id)
        backups_size = 0
        for backup_key in backups:
            backups_size += _document_size(await self.store.load(backup_key))

        return StorageStats(
            config_size=config_size,
            backups_size=backups_size,
            total_size=config_size + backups_size,
            backup_count=len(backups),
        )


def _document_size(document: dict[str, Any] | None) -> int:
    if document is None:
        return 0
    return len(json.dumps(document).encode("utf-8"))
