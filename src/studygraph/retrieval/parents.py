"""Resolve matched child chunks to their parent context windows."""
from __future__ import annotations
import logging
from typing import TYPE_CHECKING

from studygraph.knowledge_base.models import Chunk

from .hybrid import Retriever

if TYPE_CHECKING:
    from studygraph.storage.parent_store import ParentStore

logger = logging.getLogger(__name__)


class ParentResolvingRetriever:
    """Wraps a retriever that over-fetches children (typically 2k).

    Each distinct parent is returned once, in the order its first child
    ranked, flagged with ``resolved_from_child``. A child with no
    ``parent_id`` or whose parent is gone is returned as-is. Both kinds count
    toward k.
    """

    def __init__(self, base: Retriever, parent_store: ParentStore, collection: str, k: int = 8):
        self.base = base
        self.parent_store = parent_store
        self.collection = collection
        self.k = k

    async def invoke(self, query: str) -> list[Chunk]:
        children = await self.base.invoke(query)

        parent_ids: list[str] = []
        for child in children:
            pid = child.parent_id
            if pid and pid not in parent_ids:
                parent_ids.append(pid)

        if not parent_ids:
            return children[:self.k]

        parents = await self.parent_store.get_parents(self.collection, parent_ids)
        if len(parents) < len(parent_ids):
            logger.debug(f"{len(parent_ids) - len(parents)} parents missing in {self.collection}")

        seen: set[str] = set()
        results: list[Chunk] = []
        for child in children:
            if len(results) >= self.k:
                break

            pid = child.parent_id
            if not pid:
                results.append(child)
                continue
            if pid in seen:
                continue
            seen.add(pid)

            parent = parents.get(pid)
            if parent is None:
                results.append(child)
            else:
                results.append(parent.to_chunk(resolved_from_child=True))

        return results
