"""Embedding gateway interface.

The core never picks an embedding provider; callers hand in any object that
implements ``EmbeddingGateway``.
"""
from __future__ import annotations
import logging
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)

# Upper bound on texts per embed_documents call
MAX_EMBED_BATCH = 512


@runtime_checkable
class EmbeddingGateway(Protocol):
    """Anything that can turn text into vectors."""

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        ...

    async def embed_query(self, text: str) -> list[float]:
        ...


async def embed_in_batches(
    embeddings: EmbeddingGateway,
    texts: list[str],
    batch_size: int = MAX_EMBED_BATCH,
) -> list[list[float]]:
    """Embed texts in sequential batches of at most ``batch_size``.

    Batches run one after another to respect upstream rate limits. Errors
    from the gateway propagate to the caller.

    Raises:
        RuntimeError: If the gateway returns the wrong number of vectors
    """
    batch_size = max(1, min(batch_size, MAX_EMBED_BATCH))
    vectors: list[list[float]] = []

    for i in range(0, len(texts), batch_size):
        batch = texts[i:i + batch_size]
        logger.debug(f"Embedding batch {i // batch_size + 1} ({len(batch)} texts)")
        batch_vectors = await embeddings.embed_documents(batch)
        if len(batch_vectors) != len(batch):
            raise RuntimeError(
                f"Embedding gateway returned {len(batch_vectors)} vectors for {len(batch)} texts"
            )
        vectors.extend(batch_vectors)

    return vectors
