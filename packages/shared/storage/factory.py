"""Factory for creating document stores based on configuration."""

from typing import TYPE_CHECKING

from packages.shared.storage.base import DocumentStore
from packages.shared.storage.local import LocalDocumentStore
from packages.shared.storage.memory import MemoryDocumentStore

if TYPE_CHECKING:
    from apps.api.config import Settings


def get_document_store(
    backend: str | None = None,
    local_path: str | None = None,
) -> DocumentStore:
    """
    Factory function to create the appropriate document store.

    Can be called directly with parameters or will use settings from config.

    Args:
        backend: "local" or "memory" (defaults to settings.storage_backend)
        local_path: Directory for local storage

    Returns:
        Configured DocumentStore instance
    """
    # Import settings lazily to avoid circular imports
    from apps.api.config import get_settings

    settings = get_settings()

    storage_backend = backend or settings.storage_backend

    if storage_backend == "memory":
        return MemoryDocumentStore()
    return LocalDocumentStore(base_path=local_path or settings.local_config_path)


def get_document_store_from_settings(settings: "Settings") -> DocumentStore:
    """
    Create a document store directly from a Settings object.

    Useful for dependency injection in tests.
    """
    if settings.storage_backend == "memory":
        return MemoryDocumentStore()
    return LocalDocumentStore(base_path=settings.local_config_path)
