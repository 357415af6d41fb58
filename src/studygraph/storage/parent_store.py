"""Parent chunk store.

Parents are the wide context windows returned to callers after a child chunk
matched. They are never searched, so they live in a plain JSON map per
collection, independent of the searchable backend:

    <root>/json/<collection>__parents.json  ->  {parent_id: {content, metadata}}
"""
from __future__ import annotations
import asyncio
import logging
from pathlib import Path
from typing import Iterable

from studygraph.knowledge_base.models import ParentChunk

from .jsonfile import read_json, safe_name, write_json_atomic
from .locks import KeyedLock

logger = logging.getLogger(__name__)


class ParentStore:
    """JSON-file parent store with per-collection write serialization."""

    def __init__(self, root: str | Path, locks: KeyedLock | None = None):
        self.root = Path(root)
        self.locks = locks if locks is not None else KeyedLock()

    def path_for(self, collection: str) -> Path:
        return self.root / "json" / f"{safe_name(collection)}__parents.json"

    async def _load(self, collection: str) -> dict[str, dict]:
        data = await asyncio.to_thread(read_json, self.path_for(collection), {})
        # entries that are not objects are dropped
        return {pid: entry for pid, entry in data.items() if isinstance(entry, dict)}

    async def _write(self, collection: str, data: dict[str, dict]) -> None:
        await asyncio.to_thread(write_json_atomic, self.path_for(collection), data)

    async def save_parents(self, collection: str, parents: Iterable[ParentChunk]) -> None:
        """Insert or replace parents by id."""
        parents = list(parents)
        async with self.locks.hold(f"parent:{collection}"):
            data = await self._load(collection)
            for parent in parents:
                data[parent.parent_id] = {"content": parent.content, "metadata": parent.metadata}
            await self._write(collection, data)
        logger.debug(f"Saved {len(parents)} parents to {collection}")

    async def get_parent(self, collection: str, parent_id: str) -> ParentChunk | None:
        entry = (await self._load(collection)).get(parent_id)
        if entry is None:
            return None
        return _to_parent(parent_id, entry)

    async def get_parents(self, collection: str, parent_ids: Iterable[str]) -> dict[str, ParentChunk]:
        """Batch lookup. Unknown ids are left out of the result."""
        data = await self._load(collection)
        return {
            pid: _to_parent(pid, data[pid])
            for pid in parent_ids
            if pid in data
        }

    async def delete_by_source(self, collection: str, source_id: str) -> int:
        """Remove every parent whose metadata ``source_id`` matches.

        Returns:
            Number of parents removed
        """
        async with self.locks.hold(f"parent:{collection}"):
            data = await self._load(collection)
            kept = {
                pid: entry for pid, entry in data.items()
                if _metadata(entry).get("source_id") != source_id
            }
            removed = len(data) - len(kept)
            if removed:
                await self._write(collection, kept)
        return removed

    async def clear(self, collection: str) -> None:
        async with self.locks.hold(f"parent:{collection}"):
            path = self.path_for(collection)
            if path.exists():
                path.unlink()

    async def count(self, collection: str) -> int:
        return len(await self._load(collection))


def _metadata(entry: dict) -> dict:
    metadata = entry.get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def _to_parent(parent_id: str, entry: dict) -> ParentChunk:
    content = entry.get("content")
    return ParentChunk(
        parent_id=parent_id,
        content=content if isinstance(content, str) else "",
        metadata=_metadata(entry),
    )
