"""Process-wide wiring of stores, caches and locks.

One ``KnowledgeCore`` per process owns the only lock set and retriever
registry; every collection access should go through it.

Usage:
    core = KnowledgeCore.from_config(load_config())
    try:
        await core.store.save("subject:1", chunks, embeddings)
    finally:
        await core.close()
"""
from __future__ import annotations
import logging
from pathlib import Path

from studygraph.config import StudyGraphConfig
from studygraph.graph import GraphBuilder, subject_collection
from studygraph.retrieval import RetrieverRegistry
from studygraph.storage import (
    ChunkBackend,
    CollectionStore,
    JsonChunkBackend,
    KeyedLock,
    KeyValueStore,
    ParentStore,
    PgVectorChunkBackend,
)

logger = logging.getLogger(__name__)


class KnowledgeCore:
    """Collection store, parent store, KV store and graph builder sharing one lock set."""

    def __init__(
        self,
        config: StudyGraphConfig,
        store: CollectionStore,
        kv: KeyValueStore,
        graph: GraphBuilder,
    ):
        self.config = config
        self.store = store
        self.kv = kv
        self.graph = graph

    @property
    def locks(self) -> KeyedLock:
        return self.store.locks

    @property
    def registry(self) -> RetrieverRegistry:
        return self.store.registry

    @classmethod
    def from_config(cls, config: StudyGraphConfig | None = None) -> KnowledgeCore:
        config = config or StudyGraphConfig()
        root = Path(config.storage.root)

        locks = KeyedLock()
        registry = RetrieverRegistry()
        parents = ParentStore(root, locks)

        backend: ChunkBackend
        if config.storage.backend == "pgvector":
            backend = PgVectorChunkBackend(
                dsn=config.storage.dsn,
                schema_name=config.storage.schema_name,
                pool_size=config.storage.pool_size,
            )
        else:
            backend = JsonChunkBackend(root)

        store = CollectionStore(
            backend,
            parents,
            locks=locks,
            registry=registry,
            retrieval=config.retrieval,
            embed_batch_size=config.chunking.embed_batch_size,
        )
        kv = KeyValueStore(root)
        graph = GraphBuilder(store, kv, config.graph, locks)

        logger.info(f"Knowledge core ready: backend={config.storage.backend}, root={root}")
        return cls(config, store, kv, graph)

    async def delete_subject(self, subject_id: str) -> None:
        """Remove a subject's chunks, parents and concept graph."""
        await self.store.clear(subject_collection(subject_id))
        async with self.locks.hold(f"graph:{subject_id}"):
            await self.graph.delete_graph(subject_id)
        logger.info(f"Deleted subject {subject_id}")

    async def close(self) -> None:
        """Release backend resources (the pgvector pool)."""
        await self.store.close()
