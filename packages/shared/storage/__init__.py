"""
Keyed document stores for persisted configuration.

Provides abstract interface and implementations for:
- Local disk storage (JSON files)
- In-memory storage (tests, ephemeral processes)
"""

from packages.shared.storage.base import DocumentStore
from packages.shared.storage.factory import (
    get_document_store,
    get_document_store_from_settings,
)
from packages.shared.storage.local import LocalDocumentStore
from packages.shared.storage.memory import MemoryDocumentStore

__all__ = [
    "DocumentStore",
    "LocalDocumentStore",
    "MemoryDocumentStore",
    "get_document_store",
    "get_document_store_from_settings",
]
