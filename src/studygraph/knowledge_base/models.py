"""
Pydantic models for chunks, parent chunks and ingestion.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field


class SourceType:
    """Well-known values for the ``source_type`` metadata key."""
    MATERIAL = "material"
    EXERCISE = "exercise"
    WEB = "web"


# ============ Storage Models ============

class Chunk(BaseModel):
    """A stored unit of text plus metadata; the atomic unit of retrieval.

    Metadata keys used by the core: chunk_index, total_chunks, source_id,
    source_file, subject_id, mime_type, source_type, ingested_at, page_number,
    heading and, for child chunks, parent_id, parent_index, child_index and
    total_children.
    """
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def source_id(self) -> Optional[str]:
        return self.metadata.get("source_id")

    @property
    def source_file(self) -> Optional[str]:
        return self.metadata.get("source_file")

    @property
    def parent_id(self) -> Optional[str]:
        return self.metadata.get("parent_id")

    @property
    def page_number(self) -> Optional[int]:
        return self.metadata.get("page_number")


class ParentChunk(BaseModel):
    """A larger context window stored outside the searchable index."""
    parent_id: str
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def source_id(self) -> Optional[str]:
        return self.metadata.get("source_id")

    def to_chunk(self, **extra: Any) -> Chunk:
        """Render as a retrievable Chunk, merging ``extra`` into metadata."""
        return Chunk(content=self.content, metadata={**self.metadata, **extra})


class ChunkResult(BaseModel):
    """Output of two-tier splitting."""
    parents: list[Chunk]
    children: list[Chunk]


# ============ Ingestion Models ============

class SourceMeta(BaseModel):
    """Source attributes stamped onto every chunk of a document."""
    source_id: Optional[str] = None
    source_file: Optional[str] = None
    mime_type: Optional[str] = None
    subject_id: Optional[str] = None
    source_type: Optional[str] = None


class PageText(BaseModel):
    """Text of one page as produced by the upload parser."""
    page: int
    text: str


class IngestResult(BaseModel):
    """Summary of an ingestion run."""
    collection: str
    source_id: Optional[str] = None
    chunks_stored: int
    parents_stored: int = 0
    chunks_filtered: int = 0
