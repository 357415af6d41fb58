"""Source search widened through the subject's concept graph.

Runs parent-resolving retrieval, then appends a few extra passages from
files that the concept graph links to the files already found.
"""
from __future__ import annotations
import logging
from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel

from studygraph.embeddings import EmbeddingGateway
from studygraph.knowledge_base.models import Chunk

if TYPE_CHECKING:
    from studygraph.core import KnowledgeCore

logger = logging.getLogger(__name__)

MAX_QUERY_CHARS = 500
MAX_K = 10
MAX_GRAPH_EXTRAS = 3


class SourceHit(BaseModel):
    """A passage with source attribution."""
    text: str
    source: Optional[str] = None
    page: Optional[int] = None
    source_type: Optional[str] = None
    source_id: Optional[str] = None
    heading: Optional[str] = None
    graph_linked: bool = False

    @classmethod
    def from_chunk(cls, chunk: Chunk, graph_linked: bool = False) -> SourceHit:
        meta = chunk.metadata
        return cls(
            text=chunk.content,
            source=meta.get("source_file"),
            page=meta.get("page_number"),
            source_type=meta.get("source_type"),
            source_id=meta.get("source_id"),
            heading=meta.get("heading"),
            graph_linked=graph_linked,
        )

    def location(self) -> tuple[Optional[str], Optional[int]]:
        return (self.source, self.page)


def _normalize_name(name: str) -> str:
    return name.lower().replace("_", " ").replace("-", " ")


def filter_by_source_name(chunks: list[Chunk], source_filter: str) -> list[Chunk]:
    """Keep chunks whose file name contains the filter; all chunks if none match."""
    wanted = _normalize_name(source_filter)
    filtered = [c for c in chunks if wanted in _normalize_name(c.source_file or "")]
    return filtered or chunks


async def search_sources(
    core: KnowledgeCore,
    subject_id: str,
    query: str,
    embeddings: EmbeddingGateway,
    k: int = 10,
    source_filter: Optional[str] = None,
) -> list[SourceHit]:
    """Search a subject's material.

    Args:
        core: Knowledge core
        subject_id: Subject to search
        query: Free-text query (trimmed to 500 chars)
        embeddings: Embedding gateway
        k: Number of primary hits, clamped to 1..10
        source_filter: Optional case-insensitive file name filter

    Returns:
        Up to k hits, followed by up to min(3, k) graph-linked extras
    """
    query = (query or "").strip()[:MAX_QUERY_CHARS]
    if not query:
        return []
    k = min(max(k or MAX_K, 1), MAX_K)

    collection = f"subject:{subject_id}"
    retriever = await core.store.get_retriever_with_parents(collection, embeddings, k * 2)
    chunks = await retriever.invoke(query)

    if source_filter:
        chunks = filter_by_source_name(chunks, source_filter)

    results = [SourceHit.from_chunk(c) for c in chunks[:k]]

    initial_files = list(dict.fromkeys(r.source for r in results if r.source))
    if not initial_files:
        return results

    try:
        linked = set(await core.graph.get_linked_source_files(subject_id, initial_files))
    except Exception as e:
        logger.warning(f"Graph expansion failed for subject {subject_id}: {e}")
        return results

    if not linked:
        return results

    seen = {r.location() for r in results}
    added = 0
    for chunk in chunks[k:]:
        if added >= min(MAX_GRAPH_EXTRAS, k):
            break
        if chunk.source_file not in linked:
            continue
        hit = SourceHit.from_chunk(chunk, graph_linked=True)
        if hit.location() in seen:
            continue
        seen.add(hit.location())
        results.append(hit)
        added += 1

    logger.debug(f"Search in {collection}: {len(results) - added} hits, {added} graph-linked")
    return results
