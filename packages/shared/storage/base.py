"""Abstract base class for keyed JSON document stores."""

from abc import ABC, abstractmethod
import re
from typing import Any

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class DocumentStore(ABC):
    """
    Abstract base for keyed document stores.

    A document is a JSON-compatible dict saved under a string key.
    Re-loading a key must return the last saved document unchanged,
    including across process restarts for persistent backends.
    """

    @property
    @abstractmethod
    def backend_name(self) -> str:
        """Return the name of this backend (e.g., 'local', 'memory')."""
        pass

    @abstractmethod
    async def load(self, key: str) -> dict[str, Any] | None:
        """
        Load a document by key.

        Args:
            key: Document key

        Returns:
            The stored document, or None if nothing is stored under key
        """
        pass

    @abstractmethod
    async def save(self, key: str, document: dict[str, Any]) -> None:
        """
        Save a document, replacing any previous version.

        Args:
            key: Document key
            document: JSON-compatible dict
        """
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """
        Delete a document.

        Returns:
            True if deleted, False if not found
        """
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if a document is stored under key."""
        pass

    @abstractmethod
    async def list_keys(self, prefix: str = "") -> list[str]:
        """Return all stored keys starting with prefix, sorted."""
        pass

    @staticmethod
    def validate_key(key: str) -> str:
        """
        Check that a key is safe to use as a file name.

        Raises:
            ValueError: If key is empty or contains path separators
        """
        if not key or not _KEY_PATTERN.match(key):
            raise ValueError(f"Invalid document key: {key!r}")
        return key
