"""Key-value JSON store (one file per key) used for graph persistence."""
from __future__ import annotations
import asyncio
import logging
from pathlib import Path
from typing import Any

from .jsonfile import read_json, safe_name, write_json_atomic

logger = logging.getLogger(__name__)


class KeyValueStore:
    """Stores JSON objects under ``<root>/kv/<key>.json``."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def path_for(self, key: str) -> Path:
        return self.root / "kv" / f"{safe_name(key)}.json"

    async def get(self, key: str) -> dict[str, Any] | None:
        """Return the stored object, or None when absent or malformed."""
        path = self.path_for(key)
        if not path.exists():
            return None
        data = await asyncio.to_thread(read_json, path, {})
        return data or None

    async def set(self, key: str, value: dict[str, Any]) -> None:
        await asyncio.to_thread(write_json_atomic, self.path_for(key), value)

    async def delete(self, key: str) -> bool:
        path = self.path_for(key)
        if not path.exists():
            return False
        path.unlink()
        logger.debug(f"Deleted key {key}")
        return True
