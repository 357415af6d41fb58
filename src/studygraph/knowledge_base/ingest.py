"""
Document ingestion pipeline.

Chunks a document, filters boilerplate, enriches metadata (source, page,
heading) and writes parents and children to storage.
"""

import hashlib
import logging
import re
import time
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from studygraph.config import ChunkingConfig
from studygraph.embeddings import EmbeddingGateway
from studygraph.exceptions import IngestionError

from .chunker import SemanticChunker
from .models import Chunk, IngestResult, PageText, ParentChunk, SourceMeta

if TYPE_CHECKING:
    from studygraph.storage import CollectionStore

logger = logging.getLogger(__name__)

HEADING_RE = re.compile(r"^(?:#{1,6}\s+.+|[A-Z][A-Z ]{4,80}[A-Z]$)")

BOILERPLATE_PATTERNS = [
    re.compile(r"copyright\s*©?\s*\d{4}", re.IGNORECASE),
    re.compile(r"all\s+rights\s+reserved", re.IGNORECASE),
    re.compile(r"proquest\s+ebook\s+central", re.IGNORECASE),
    re.compile(r"created\s+from\s+\w+\s+on\s+\d{4}", re.IGNORECASE),
    re.compile(r"ebookcentral\.proquest\.com", re.IGNORECASE),
    re.compile(r"reproduction.{0,50}prohibited", re.IGNORECASE),
    re.compile(r"unauthorized\s+use", re.IGNORECASE),
]

MIN_CHUNK_CHARS = 100
MIN_CONTENT_RATIO = 0.3
SNIPPET_CHARS = 60
NO_CONTENT_REASON = "No meaningful content chunks after quality filtering."


# ============ Text cleanup ============

def deduplicate_text(text: str) -> str:
    """Drop repeated short lines (running headers/footers) and excess blanks.

    A line shorter than 300 chars (after whitespace normalization) is kept for
    its first two occurrences only. Runs of blank lines are capped at two.
    """
    seen: dict[str, int] = {}
    result = []
    consecutive_blanks = 0

    for line in text.split("\n"):
        norm = " ".join(line.split()).lower()

        if not norm:
            consecutive_blanks += 1
            if consecutive_blanks <= 2:
                result.append("")
            continue

        consecutive_blanks = 0
        seen[norm] = seen.get(norm, 0) + 1
        if seen[norm] > 2 and len(norm) < 300:
            continue

        result.append(line)

    return "\n".join(result)


def content_ratio(text: str) -> float:
    """Fraction of non-empty lines that are not boilerplate."""
    lines = [line.strip() for line in text.split("\n") if line.strip()]
    if not lines:
        return 0.0

    boilerplate = sum(
        1 for line in lines
        if any(pattern.search(line) for pattern in BOILERPLATE_PATTERNS)
    )
    return (len(lines) - boilerplate) / len(lines)


def filter_low_quality(chunks: list[Chunk]) -> list[Chunk]:
    """Keep chunks of at least 100 chars whose content ratio exceeds 0.3."""
    kept = []
    for chunk in chunks:
        text = chunk.content.strip()
        if len(text) < MIN_CHUNK_CHARS:
            continue
        if content_ratio(text) <= MIN_CONTENT_RATIO:
            continue
        kept.append(chunk)
    return kept


# ============ Metadata enrichment ============

def _locate_chunks(chunks: list[Chunk], raw: str) -> list[tuple[Chunk, int]]:
    """Find each chunk's start offset in the raw text, scanning forward."""
    located = []
    search_from = 0
    for chunk in chunks:
        snippet = chunk.content[:SNIPPET_CHARS]
        start = raw.find(snippet, search_from)
        if start == -1:
            continue
        search_from = start + len(snippet)
        located.append((chunk, start))
    return located


def propagate_headings(chunks: list[Chunk], raw: str) -> None:
    """Set ``heading`` to the nearest heading line preceding each chunk."""
    headings: list[tuple[int, str]] = []
    offset = 0
    for line in raw.split("\n"):
        trimmed = line.strip()
        if HEADING_RE.match(trimmed) and not trimmed.endswith((".", "!", "?")):
            headings.append((offset, re.sub(r"^#+\s*", "", trimmed)))
        offset += len(line) + 1

    for chunk, start in _locate_chunks(chunks, raw):
        nearest = ""
        for heading_offset, heading in headings:
            if heading_offset > start:
                break
            nearest = heading
        if nearest:
            chunk.metadata["heading"] = nearest


def assign_page_numbers(chunks: list[Chunk], raw: str, pages: list[PageText]) -> None:
    """Set ``page_number`` from the page whose span holds the chunk start."""
    spans: list[tuple[int, int, int]] = []
    cursor = 0
    for page in pages:
        idx = raw.find(page.text[:SNIPPET_CHARS], cursor)
        start = idx if idx >= 0 else cursor
        end = start + len(page.text)
        spans.append((page.page, start, end))
        cursor = end

    for chunk, chunk_start in _locate_chunks(chunks, raw):
        for page_number, start, end in spans:
            if start <= chunk_start < end:
                chunk.metadata["page_number"] = page_number
                break


def apply_source_meta(chunks: list[Chunk], meta: SourceMeta, ingested_at: int) -> None:
    """Stamp source attributes (only those that are set) onto each chunk."""
    values = meta.model_dump(exclude_none=True)
    for chunk in chunks:
        chunk.metadata.update(values)
        chunk.metadata["ingested_at"] = ingested_at


def clean_document_name(source_file: str) -> str:
    """'linear_algebra-notes.pdf' -> 'linear algebra notes'"""
    return re.sub(r"[_-]", " ", re.sub(r"\.[^.]+$", "", source_file))


def prefix_document_name(chunks: list[Chunk]) -> None:
    """Prefix content with the document name so lexical search can match it."""
    for chunk in chunks:
        source_file = chunk.metadata.get("source_file")
        if source_file:
            chunk.content = f"[Document: {clean_document_name(source_file)}]\n{chunk.content}"


def generate_parent_id(collection: str, source_id: str, parent_index: int) -> str:
    """Deterministic 32-hex-char id for a parent chunk."""
    digest = hashlib.sha256(f"{collection}:{source_id}:{parent_index}".encode("utf-8"))
    return digest.hexdigest()[:32]


# ============ Pipeline ============

async def ingest_text(
    text: str,
    collection: str,
    store: "CollectionStore",
    embeddings: EmbeddingGateway,
    meta: Optional[SourceMeta] = None,
    pages: Optional[list[PageText]] = None,
    config: Optional[ChunkingConfig] = None,
    parent_retrieval: bool = True,
) -> IngestResult:
    """Chunk, enrich and store one document.

    Args:
        text: Extracted document text
        collection: Target collection, e.g. ``subject:<id>``
        store: Collection store (parents go to its parent store)
        embeddings: Embedding gateway
        meta: Source attributes stamped onto every chunk
        pages: Per-page text used to assign page numbers
        config: Chunking configuration
        parent_retrieval: Store parents and children (True) or flat chunks

    Returns:
        IngestResult with stored counts

    Raises:
        IngestionError: If no chunk survives quality filtering
    """
    meta = meta or SourceMeta()
    source_name = meta.source_file or meta.source_id or "document"
    chunker = SemanticChunker(config)
    now = int(time.time() * 1000)

    if not parent_retrieval:
        chunks = await chunker.chunk(text, embeddings)
        kept = filter_low_quality(chunks)
        if not kept:
            raise IngestionError(source_name, NO_CONTENT_REASON)

        apply_source_meta(kept, meta, now)
        if pages:
            assign_page_numbers(kept, text, pages)
        propagate_headings(kept, text)
        prefix_document_name(kept)

        await store.save(collection, kept, embeddings)
        logger.info(f"Ingested {source_name} into {collection}: {len(kept)} chunks")
        return IngestResult(
            collection=collection,
            source_id=meta.source_id,
            chunks_stored=len(kept),
            chunks_filtered=len(chunks) - len(kept),
        )

    result = await chunker.chunk_with_children(text, embeddings)

    parents = filter_low_quality(result.parents)
    if not parents:
        raise IngestionError(source_name, NO_CONTENT_REASON)

    parents_by_index = {p.metadata["chunk_index"]: p for p in parents}
    children = [c for c in result.children if c.metadata["parent_index"] in parents_by_index]

    apply_source_meta(parents, meta, now)
    if pages:
        assign_page_numbers(parents, text, pages)
    propagate_headings(parents, text)

    source_id = meta.source_id or "unknown"
    parent_entries = []
    parent_ids: dict[int, str] = {}
    for index, parent in parents_by_index.items():
        parent_id = generate_parent_id(collection, source_id, index)
        parent_ids[index] = parent_id
        parent_entries.append(ParentChunk(
            parent_id=parent_id,
            content=parent.content,
            metadata=dict(parent.metadata),
        ))

    apply_source_meta(children, meta, now)
    for child in children:
        parent = parents_by_index[child.metadata["parent_index"]]
        child.metadata["parent_id"] = parent_ids[child.metadata["parent_index"]]
        if parent.metadata.get("heading"):
            child.metadata["heading"] = parent.metadata["heading"]
        if parent.metadata.get("page_number") is not None:
            child.metadata["page_number"] = parent.metadata["page_number"]

    prefix_document_name(children)

    await store.parents.save_parents(collection, parent_entries)
    await store.save(collection, children, embeddings)

    logger.info(
        f"Ingested {source_name} into {collection}: "
        f"{len(parent_entries)} parents, {len(children)} children"
    )
    return IngestResult(
        collection=collection,
        source_id=meta.source_id,
        chunks_stored=len(children),
        parents_stored=len(parent_entries),
        chunks_filtered=len(result.parents) - len(parents),
    )


async def ingest_file(
    path: str | Path,
    collection: str,
    store: "CollectionStore",
    embeddings: EmbeddingGateway,
    meta: Optional[SourceMeta] = None,
    config: Optional[ChunkingConfig] = None,
    parent_retrieval: bool = True,
) -> IngestResult:
    """Ingest a UTF-8 text or markdown file.

    Repeated running headers are removed before chunking. ``source_file``
    defaults to the file name.
    """
    path = Path(path)
    if not path.exists():
        raise IngestionError(str(path), "file not found")

    meta = meta or SourceMeta()
    if not meta.source_file:
        meta = meta.model_copy(update={"source_file": path.name})

    text = deduplicate_text(path.read_text(encoding="utf-8", errors="replace"))
    return await ingest_text(
        text,
        collection,
        store,
        embeddings,
        meta=meta,
        config=config,
        parent_retrieval=parent_retrieval,
    )
