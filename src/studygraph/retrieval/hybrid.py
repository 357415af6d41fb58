"""Hybrid retrieval combining dense vector similarity and BM25.

A ``HybridIndex`` is built once per collection and cached by the
``RetrieverRegistry``. Retrievers are cheap views over it with their own k.
Results from both rankers are merged with weighted Reciprocal Rank Fusion.
"""
from __future__ import annotations
import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import numpy as np
from rank_bm25 import BM25Okapi

from studygraph.embeddings import EmbeddingGateway, embed_in_batches, MAX_EMBED_BATCH
from studygraph.knowledge_base.models import Chunk

logger = logging.getLogger(__name__)

_WORD = re.compile(r"\w+")


def tokenize(text: str) -> list[str]:
    """Lower-cased word tokens for BM25."""
    return _WORD.findall(text.lower())


def chunk_key(chunk: Chunk) -> tuple:
    """Identity used to merge the same chunk across rankers."""
    meta = chunk.metadata
    return (chunk.content, meta.get("source_id"), meta.get("parent_id"), meta.get("chunk_index"))


@runtime_checkable
class Retriever(Protocol):
    """Anything that answers a query with ranked chunks."""

    async def invoke(self, query: str) -> list[Chunk]:
        ...


class DenseIndex(Protocol):
    """Nearest-neighbour search over chunk embeddings."""

    async def search(self, query_vector: list[float], k: int) -> list[Chunk]:
        ...


# ============ Rankers ============

class NumpyVectorIndex:
    """In-memory cosine similarity index over a matrix of chunk embeddings."""

    def __init__(self, chunks: list[Chunk], matrix: np.ndarray):
        if len(chunks) != matrix.shape[0]:
            raise ValueError(f"{len(chunks)} chunks but {matrix.shape[0]} vectors")
        self.chunks = chunks
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        self._normalized = matrix / norms

    @classmethod
    async def build(
        cls,
        chunks: list[Chunk],
        embeddings: EmbeddingGateway,
        batch_size: int = MAX_EMBED_BATCH,
    ) -> NumpyVectorIndex:
        """Embed every chunk and build the index."""
        vectors = await embed_in_batches(embeddings, [c.content for c in chunks], batch_size)
        matrix = np.asarray(vectors, dtype=np.float32)
        if matrix.ndim != 2:
            matrix = matrix.reshape(len(chunks), -1)
        return cls(chunks, matrix)

    async def search(self, query_vector: list[float], k: int) -> list[Chunk]:
        if not self.chunks or k <= 0:
            return []

        query = np.asarray(query_vector, dtype=np.float32)
        norm = np.linalg.norm(query)
        if norm == 0:
            scores = np.zeros(len(self.chunks), dtype=np.float32)
        else:
            scores = self._normalized @ (query / norm)

        order = np.argsort(-scores, kind="stable")[:k]
        return [self.chunks[i] for i in order]


class LexicalIndex:
    """BM25 (Okapi) ranking over lower-cased word tokens."""

    def __init__(self, chunks: list[Chunk]):
        self.chunks = chunks
        corpus = [tokenize(c.content) for c in chunks]
        # BM25Okapi divides by the average document length
        self._bm25 = BM25Okapi(corpus) if any(corpus) else None

    def search(self, query: str, k: int) -> list[Chunk]:
        if self._bm25 is None or k <= 0:
            return []

        scores = self._bm25.get_scores(tokenize(query))
        order = np.argsort(-scores, kind="stable")[:k]
        return [self.chunks[i] for i in order]


# ============ Index + retrievers ============

class HybridIndex:
    """Dense and lexical rankers over one collection snapshot."""

    def __init__(
        self,
        chunks: list[Chunk],
        dense: DenseIndex,
        embeddings: EmbeddingGateway,
        lexical: LexicalIndex | None = None,
    ):
        self.chunks = chunks
        self.dense = dense
        self.embeddings = embeddings
        self.lexical = lexical if lexical is not None else LexicalIndex(chunks)

    @classmethod
    async def build(
        cls,
        chunks: list[Chunk],
        embeddings: EmbeddingGateway,
        batch_size: int = MAX_EMBED_BATCH,
        dense: DenseIndex | None = None,
    ) -> HybridIndex:
        """Build an index, embedding chunks in memory unless ``dense`` is given."""
        if dense is None:
            dense = await NumpyVectorIndex.build(chunks, embeddings, batch_size)
        lexical = await asyncio.to_thread(LexicalIndex, chunks)
        logger.info(f"Built hybrid index over {len(chunks)} chunks")
        return cls(chunks, dense, embeddings, lexical)

    def __len__(self) -> int:
        return len(self.chunks)


@dataclass
class _Candidate:
    chunk: Chunk
    score: float = 0.0
    vec_rank: int | None = None
    lex_rank: int | None = None


def reciprocal_rank_fusion(
    dense_hits: list[Chunk],
    lexical_hits: list[Chunk],
    vector_weight: float = 0.5,
    lexical_weight: float = 0.5,
    c: int = 60,
) -> list[Chunk]:
    """Merge two rankings with weighted RRF.

    score = sum(weight / (rank + c)) with 1-based ranks. A chunk present in
    both lists appears once. Ties keep dense-first order.
    """
    candidates: dict[tuple, _Candidate] = {}

    for rank, chunk in enumerate(dense_hits, start=1):
        cand = candidates.setdefault(chunk_key(chunk), _Candidate(chunk))
        if cand.vec_rank is None:
            cand.vec_rank = rank
            cand.score += vector_weight / (rank + c)

    for rank, chunk in enumerate(lexical_hits, start=1):
        cand = candidates.setdefault(chunk_key(chunk), _Candidate(chunk))
        if cand.lex_rank is None:
            cand.lex_rank = rank
            cand.score += lexical_weight / (rank + c)

    # sorted() is stable, so insertion order (dense first) breaks ties
    ranked = sorted(candidates.values(), key=lambda cand: cand.score, reverse=True)
    return [cand.chunk for cand in ranked]


class HybridRetriever:
    """Top-k view over a HybridIndex."""

    def __init__(
        self,
        index: HybridIndex,
        k: int = 8,
        vector_weight: float = 0.5,
        lexical_weight: float = 0.5,
        rrf_c: int = 60,
    ):
        self.index = index
        self.k = k
        self.vector_weight = vector_weight
        self.lexical_weight = lexical_weight
        self.rrf_c = rrf_c

    async def invoke(self, query: str) -> list[Chunk]:
        """Return up to k chunks for the query.

        Embedding errors propagate; there is no lexical-only fallback.
        """
        query_vector = await self.index.embeddings.embed_query(query)
        dense_hits = await self.index.dense.search(query_vector, self.k)
        lexical_hits = self.index.lexical.search(query, self.k)

        fused = reciprocal_rank_fusion(
            dense_hits,
            lexical_hits,
            vector_weight=self.vector_weight,
            lexical_weight=self.lexical_weight,
            c=self.rrf_c,
        )
        logger.debug(
            f"Hybrid query: {len(dense_hits)} dense, {len(lexical_hits)} lexical, {len(fused)} fused"
        )
        return fused[:self.k]


class EmptyRetriever:
    """Retriever for a collection with no chunks."""

    def __init__(self, k: int = 8):
        self.k = k

    async def invoke(self, query: str) -> list[Chunk]:
        return []
