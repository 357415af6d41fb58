"""
Knowledge Base module for document chunking and ingestion.

This module provides:
- Semantic chunking with structural pre-splitting
- Two-tier parent/child splitting for precise retrieval with wide context
- Ingestion with quality filtering, page and heading enrichment
"""

from .models import (
    Chunk,
    ParentChunk,
    ChunkResult,
    SourceMeta,
    SourceType,
    PageText,
    IngestResult,
)
from .chunker import SemanticChunker, semantic_chunk, split_with_children
from .ingest import ingest_text, ingest_file, deduplicate_text

__all__ = [
    "Chunk",
    "ParentChunk",
    "ChunkResult",
    "SourceMeta",
    "SourceType",
    "PageText",
    "IngestResult",
    "SemanticChunker",
    "semantic_chunk",
    "split_with_children",
    "ingest_text",
    "ingest_file",
    "deduplicate_text",
]
