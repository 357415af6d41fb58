"""Cache of built hybrid indexes, one per collection."""
from __future__ import annotations
import logging

from .hybrid import HybridIndex

logger = logging.getLogger(__name__)


class RetrieverRegistry:
    """Holds the current HybridIndex for each collection.

    Every invalidation bumps the collection's generation. A build started
    before a write carries the old generation and is refused by ``put``, so
    a stale index is never cached.
    """

    def __init__(self) -> None:
        self._indexes: dict[str, HybridIndex] = {}
        self._generations: dict[str, int] = {}

    def get(self, collection: str) -> HybridIndex | None:
        return self._indexes.get(collection)

    def generation(self, collection: str) -> int:
        return self._generations.get(collection, 0)

    def put(self, collection: str, index: HybridIndex, generation: int | None = None) -> bool:
        """Cache an index.

        Returns:
            False if ``generation`` is given and no longer current
        """
        if generation is not None and generation != self.generation(collection):
            logger.debug(f"Discarding stale index for {collection}")
            return False
        self._indexes[collection] = index
        return True

    def invalidate(self, collection: str) -> None:
        self._indexes.pop(collection, None)
        self._generations[collection] = self.generation(collection) + 1

    def clear(self) -> None:
        for collection in list(self._indexes):
            self.invalidate(collection)

    def __contains__(self, collection: str) -> bool:
        return collection in self._indexes
