"""Collection store: chunk persistence plus cached hybrid retrievers.

All mutations of one collection are serialized under a per-collection lock;
different collections proceed concurrently. Every write invalidates the
collection's cached index.
"""
from __future__ import annotations
import logging

from studygraph.config import RetrievalConfig
from studygraph.embeddings import EmbeddingGateway, MAX_EMBED_BATCH
from studygraph.knowledge_base.models import Chunk
from studygraph.retrieval.hybrid import EmptyRetriever, HybridIndex, HybridRetriever, Retriever
from studygraph.retrieval.parents import ParentResolvingRetriever
from studygraph.retrieval.registry import RetrieverRegistry

from .backends import ChunkBackend
from .locks import KeyedLock
from .parent_store import ParentStore

logger = logging.getLogger(__name__)


class CollectionStore:
    """Front door for chunk storage and retrieval of named collections."""

    def __init__(
        self,
        backend: ChunkBackend,
        parents: ParentStore,
        locks: KeyedLock | None = None,
        registry: RetrieverRegistry | None = None,
        retrieval: RetrievalConfig | None = None,
        embed_batch_size: int = MAX_EMBED_BATCH,
    ):
        self.backend = backend
        self.parents = parents
        self.locks = locks if locks is not None else KeyedLock()
        self.registry = registry if registry is not None else RetrieverRegistry()
        self.retrieval = retrieval or RetrievalConfig()
        self.embed_batch_size = embed_batch_size

    # ============ Mutations ============

    async def save(self, collection: str, chunks: list[Chunk], embeddings: EmbeddingGateway) -> None:
        """Append chunks to a collection."""
        if not chunks:
            return
        async with self.locks.hold(collection):
            await self.backend.append(collection, chunks, embeddings)
            self.registry.invalidate(collection)
        logger.info(f"Saved {len(chunks)} chunks to {collection}")

    async def delete_by_source(self, collection: str, source_id: str) -> int:
        """Remove a source's chunks, then its parents.

        Returns:
            Number of chunks removed
        """
        async with self.locks.hold(collection):
            removed = await self.backend.delete_by_source(collection, source_id)
            self.registry.invalidate(collection)

        parents_removed = await self.parents.delete_by_source(collection, source_id)
        logger.info(
            f"Deleted source {source_id} from {collection}: "
            f"{removed} chunks, {parents_removed} parents"
        )
        return removed

    async def clear(self, collection: str) -> None:
        """Empty a collection and its parent store."""
        async with self.locks.hold(collection):
            await self.backend.clear(collection)
            self.registry.invalidate(collection)
        await self.parents.clear(collection)
        logger.info(f"Cleared {collection}")

    # ============ Reads ============

    async def get_all(self, collection: str, source_ids: list[str] | None = None) -> list[Chunk]:
        """All chunks, optionally restricted to the given source ids.

        An empty or missing whitelist means no filtering.
        """
        chunks = await self.backend.load(collection)
        if not source_ids:
            return chunks
        wanted = set(source_ids)
        return [c for c in chunks if c.source_id in wanted]

    async def count(self, collection: str) -> int:
        return await self.backend.count(collection)

    async def get_index(self, collection: str, embeddings: EmbeddingGateway) -> HybridIndex | None:
        """Cached index for a collection, built on first use. None when empty."""
        index = self.registry.get(collection)
        if index is not None:
            return index

        async with self.locks.hold(f"build:{collection}"):
            index = self.registry.get(collection)
            if index is not None:
                return index

            generation = self.registry.generation(collection)
            chunks = await self.backend.load(collection)
            if not chunks:
                return None

            dense = await self.backend.dense_index(collection, chunks, embeddings, self.embed_batch_size)
            index = await HybridIndex.build(chunks, embeddings, dense=dense)
            self.registry.put(collection, index, generation)
            return index

    async def get_retriever(
        self,
        collection: str,
        embeddings: EmbeddingGateway,
        k: int | None = None,
    ) -> Retriever:
        """Hybrid BM25 + vector retriever returning up to k chunks."""
        k = k or self.retrieval.default_k
        index = await self.get_index(collection, embeddings)
        if index is None:
            return EmptyRetriever(k)
        return HybridRetriever(
            index,
            k=k,
            vector_weight=self.retrieval.vector_weight,
            lexical_weight=self.retrieval.lexical_weight,
            rrf_c=self.retrieval.rrf_c,
        )

    async def get_retriever_with_parents(
        self,
        collection: str,
        embeddings: EmbeddingGateway,
        k: int | None = None,
    ) -> Retriever:
        """Retriever that matches children and returns their parents."""
        k = k or self.retrieval.default_k
        if not self.retrieval.parent_retrieval:
            return await self.get_retriever(collection, embeddings, k)

        base = await self.get_retriever(collection, embeddings, k * 2)
        return ParentResolvingRetriever(base, self.parents, collection, k)

    async def close(self) -> None:
        await self.backend.close()
