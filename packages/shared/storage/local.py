"""Local disk document store."""

import json
import logging
import uuid
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from packages.shared.storage.base import DocumentStore

logger = logging.getLogger(__name__)


class LocalDocumentStore(DocumentStore):
    """
    Local disk document store.

    Documents are stored as pretty-printed JSON: <base_path>/<key>.json
    Writes go to a temporary file first and are moved into place, so a
    crash mid-write never leaves a truncated document behind.
    """

    def __init__(self, base_path: str = "./data/polymorphic"):
        """
        Initialize local document store.

        Args:
            base_path: Directory holding the documents
        """
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    @property
    def backend_name(self) -> str:
        return "local"

    def _path_for(self, key: str) -> Path:
        return self.base_path / f"{self.validate_key(key)}.json"

    async def load(self, key: str) -> dict[str, Any] | None:
        """
        Load a document from disk.

        Raises:
            json.JSONDecodeError: If the stored file is not valid JSON
        """
        path = self._path_for(key)
        if not await aiofiles.os.path.exists(path):
            return None

        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            content = await f.read()

        return json.loads(content)

    async def save(self, key: str, document: dict[str, Any]) -> None:
        """Write a document to disk atomically."""
        path = self._path_for(key)
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")

        content = json.dumps(document, indent=2, sort_keys=True, default=str)
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(content)

        await aiofiles.os.replace(tmp_path, path)
        logger.debug(f"Saved document {key} to {path}")

    async def delete(self, key: str) -> bool:
        path = self._path_for(key)
        if await aiofiles.os.path.exists(path):
            await aiofiles.os.remove(path)
            return True
        return False

    async def exists(self, key: str) -> bool:
        return await aiofiles.os.path.exists(self._path_for(key))

    async def list_keys(self, prefix: str = "") -> list[str]:
        names = await aiofiles.os.listdir(self.base_path)
        keys = [
            name[: -len(".json")]
            for name in names
            if name.endswith(".json") and not name.startswith(".")
        ]
        return sorted(key for key in keys if key.startswith(prefix))
