"""Chunk storage backends.

``JsonChunkBackend`` keeps each collection in one JSON array file and embeds
chunks in memory when an index is built. ``PgVectorChunkBackend`` stores
chunks with their embeddings in PostgreSQL and answers the dense side of
hybrid queries with pgvector.
"""
from __future__ import annotations
import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Protocol

import asyncpg

from studygraph.embeddings import EmbeddingGateway, embed_in_batches, MAX_EMBED_BATCH
from studygraph.knowledge_base.models import Chunk
from studygraph.retrieval.hybrid import DenseIndex, NumpyVectorIndex

from .jsonfile import read_json, safe_name, write_json_atomic

logger = logging.getLogger(__name__)


class ChunkBackend(Protocol):
    """Storage operations the CollectionStore delegates to.

    Callers serialize mutations of one collection; backends need no locking
    of their own.
    """

    async def append(self, collection: str, chunks: list[Chunk], embeddings: EmbeddingGateway) -> None:
        ...

    async def load(self, collection: str) -> list[Chunk]:
        ...

    async def delete_by_source(self, collection: str, source_id: str) -> int:
        ...

    async def clear(self, collection: str) -> None:
        ...

    async def count(self, collection: str) -> int:
        ...

    async def dense_index(
        self,
        collection: str,
        chunks: list[Chunk],
        embeddings: EmbeddingGateway,
        batch_size: int = MAX_EMBED_BATCH,
    ) -> DenseIndex:
        ...

    async def close(self) -> None:
        ...


# ============ JSON files ============

class JsonChunkBackend:
    """One ``<root>/json/<collection>.json`` array per collection.

    Entries that are not objects are skipped on every read.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def path_for(self, collection: str) -> Path:
        return self.root / "json" / f"{safe_name(collection)}.json"

    async def _read(self, collection: str) -> list[dict]:
        data = await asyncio.to_thread(read_json, self.path_for(collection), [])
        return [entry for entry in data if isinstance(entry, dict)]

    async def _write(self, collection: str, data: list[dict]) -> None:
        await asyncio.to_thread(write_json_atomic, self.path_for(collection), data)

    async def append(self, collection: str, chunks: list[Chunk], embeddings: EmbeddingGateway) -> None:
        data = await self._read(collection)
        data.extend({"content": c.content, "metadata": c.metadata} for c in chunks)
        await self._write(collection, data)

    async def load(self, collection: str) -> list[Chunk]:
        return [_entry_to_chunk(entry) for entry in await self._read(collection)]

    async def delete_by_source(self, collection: str, source_id: str) -> int:
        data = await self._read(collection)
        kept = [e for e in data if _entry_to_chunk(e).source_id != source_id]
        removed = len(data) - len(kept)
        if removed:
            await self._write(collection, kept)
        return removed

    async def clear(self, collection: str) -> None:
        path = self.path_for(collection)
        if path.exists():
            path.unlink()

    async def count(self, collection: str) -> int:
        return len(await self._read(collection))

    async def dense_index(
        self,
        collection: str,
        chunks: list[Chunk],
        embeddings: EmbeddingGateway,
        batch_size: int = MAX_EMBED_BATCH,
    ) -> DenseIndex:
        return await NumpyVectorIndex.build(chunks, embeddings, batch_size)

    async def close(self) -> None:
        return None


def _entry_to_chunk(entry: dict) -> Chunk:
    content = entry.get("content")
    metadata = entry.get("metadata")
    return Chunk(
        content=content if isinstance(content, str) else "",
        metadata=metadata if isinstance(metadata, dict) else {},
    )


# ============ PostgreSQL + pgvector ============

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


def to_vector_literal(vector: list[float]) -> str:
    """Format a vector as a pgvector text literal."""
    return "[" + ",".join(str(float(x)) for x in vector) + "]"


class PgVectorChunkBackend:
    """Chunks and embeddings in ``<schema>.chunk``.

    The connection pool and table are created on first use.
    """

    def __init__(self, dsn: str, schema_name: str = "studygraph", pool_size: int = 5):
        if not _IDENTIFIER.match(schema_name):
            raise ValueError(f"Invalid schema name: {schema_name}")
        self.dsn = dsn
        self.schema_name = schema_name
        self.pool_size = pool_size
        self.pool: asyncpg.Pool | None = None
        self._pool_lock = asyncio.Lock()

    @property
    def table(self) -> str:
        return f'"{self.schema_name}".chunk'

    async def _get_pool(self) -> asyncpg.Pool:
        if self.pool is not None:
            return self.pool

        async with self._pool_lock:
            if self.pool is None:
                pool = await asyncpg.create_pool(
                    self.dsn,
                    min_size=1,
                    max_size=self.pool_size,
                    command_timeout=60.0,
                )
                try:
                    async with pool.acquire() as conn:
                        await self._ensure_schema(conn)
                except Exception:
                    await pool.close()
                    raise
                self.pool = pool
                logger.info(f"Connected to PostgreSQL (schema {self.schema_name})")
        return self.pool

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute('CREATE EXTENSION IF NOT EXISTS vector')
        await conn.execute(f'CREATE SCHEMA IF NOT EXISTS "{self.schema_name}"')
        await conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {self.table} (
                id BIGSERIAL PRIMARY KEY,
                collection TEXT NOT NULL,
                source_id TEXT,
                content TEXT NOT NULL,
                metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                embedding vector NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
        """)
        await conn.execute(
            f'CREATE INDEX IF NOT EXISTS chunk_collection_source_idx '
            f'ON {self.table} (collection, source_id)'
        )

    async def append(self, collection: str, chunks: list[Chunk], embeddings: EmbeddingGateway) -> None:
        if not chunks:
            return

        vectors = await embed_in_batches(embeddings, [c.content for c in chunks])
        pool = await self._get_pool()

        rows = [
            (
                collection,
                chunk.metadata.get("source_id"),
                chunk.content,
                json.dumps(chunk.metadata),
                to_vector_literal(vector),
            )
            for chunk, vector in zip(chunks, vectors)
        ]
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(f"""
                    INSERT INTO {self.table} (collection, source_id, content, metadata, embedding)
                    VALUES ($1, $2, $3, $4::jsonb, $5::vector)
                """, rows)

        logger.debug(f"Inserted {len(rows)} chunks into {collection}")

    async def load(self, collection: str) -> list[Chunk]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT content, metadata FROM {self.table} WHERE collection = $1 ORDER BY id",
                collection,
            )
        return [_row_to_chunk(row) for row in rows]

    async def similarity_search(self, collection: str, query_vector: list[float], k: int) -> list[Chunk]:
        """Nearest chunks by cosine distance."""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT content, metadata
                FROM {self.table}
                WHERE collection = $1
                ORDER BY embedding <=> $2::vector
                LIMIT $3
            """, collection, to_vector_literal(query_vector), k)
        return [_row_to_chunk(row) for row in rows]

    async def delete_by_source(self, collection: str, source_id: str) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(
                f"DELETE FROM {self.table} WHERE collection = $1 AND source_id = $2",
                collection, source_id,
            )
        # asyncpg returns e.g. "DELETE 3"
        return int(status.split()[-1])

    async def clear(self, collection: str) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(f"DELETE FROM {self.table} WHERE collection = $1", collection)

    async def count(self, collection: str) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await conn.fetchval(
                f"SELECT COUNT(*) FROM {self.table} WHERE collection = $1", collection
            )

    async def dense_index(
        self,
        collection: str,
        chunks: list[Chunk],
        embeddings: EmbeddingGateway,
        batch_size: int = MAX_EMBED_BATCH,
    ) -> DenseIndex:
        return PgVectorIndex(self, collection)

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None


class PgVectorIndex:
    """DenseIndex that delegates nearest-neighbour search to PostgreSQL."""

    def __init__(self, backend: PgVectorChunkBackend, collection: str):
        self.backend = backend
        self.collection = collection

    async def search(self, query_vector: list[float], k: int) -> list[Chunk]:
        if k <= 0:
            return []
        return await self.backend.similarity_search(self.collection, query_vector, k)


def _row_to_chunk(row) -> Chunk:
    metadata = row["metadata"]
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return Chunk(content=row["content"], metadata=metadata or {})
