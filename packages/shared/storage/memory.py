"""In-memory document store for tests and ephemeral setups."""

import copy
from typing import Any

from packages.shared.storage.base import DocumentStore


class MemoryDocumentStore(DocumentStore):
    """
    Process-local document store.

    Documents are deep-copied on the way in and out so callers can never
    mutate stored state through a reference they hold.
    """

    def __init__(self) -> None:
        self._documents: dict[str, dict[str, Any]] = {}

    @property
    def backend_name(self) -> str:
        return "memory"

    async def load(self, key: str) -> dict[str, Any] | None:
        document = self._documents.get(self.validate_key(key))
        return copy.deepcopy(document) if document is not None else None

    async def save(self, key: str, document: dict[str, Any]) -> None:
        self._documents[self.validate_key(key)] = copy.deepcopy(document)

    async def delete(self, key: str) -> bool:
        return self._documents.pop(self.validate_key(key), None) is not None

    async def exists(self, key: str) -> bool:
        return self.validate_key(key) in self._documents

    async def list_keys(self, prefix: str = "") -> list[str]:
        return sorted(key for key in self._documents if key.startswith(prefix))
