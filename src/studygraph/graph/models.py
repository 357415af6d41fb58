"""
Pydantic models for the per-subject concept graph.
"""

from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

Importance = Literal["high", "medium", "low"]
ConsolidationOutcome = Literal["skipped", "llm", "trimmed"]


# ============ Graph Models ============

class SourceRef(BaseModel):
    """A (file, page) location a concept was found in."""
    file: str
    page: Optional[int] = None

    def key(self) -> tuple[str, Optional[int]]:
        return (self.file, self.page)


class ConceptNode(BaseModel):
    """A concept extracted from subject material."""
    id: str
    label: str
    description: str = ""
    category: str = "term"
    importance: Importance = "medium"
    color: str
    sources: list[SourceRef] = Field(default_factory=list)


class ConceptEdge(BaseModel):
    """A directed, labelled relationship between two concepts."""
    source: str
    target: str
    label: str = "relates-to"
    weight: float = 0.5

    @field_validator("weight")
    @classmethod
    def clamp_weight(cls, v: float) -> float:
        return max(0.0, min(1.0, v))

    def key(self) -> str:
        return f"{self.source}->{self.target}:{self.label}"


class KnowledgeGraph(BaseModel):
    """Concept graph of one subject, persisted under ``subject:<id>:graph``."""
    nodes: list[ConceptNode] = Field(default_factory=list)
    edges: list[ConceptEdge] = Field(default_factory=list)
    generated_at: int = 0
    source_count: int = 0

    def node_ids(self) -> set[str]:
        return {n.id for n in self.nodes}


# ============ Build Reports ============

class BatchFailure(BaseModel):
    """An extraction batch that contributed nothing."""
    index: int
    reason: str


class ExtractionReport(BaseModel):
    """What happened during an expand or rebuild."""
    succeeded_batches: list[int] = Field(default_factory=list)
    failed_batches: list[BatchFailure] = Field(default_factory=list)
    bridging_error: Optional[str] = None
    consolidation: ConsolidationOutcome = "skipped"
    consolidation_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return (
            not self.failed_batches
            and self.bridging_error is None
            and self.consolidation_error is None
        )


class GraphBuildResult(BaseModel):
    """Graph plus the report of the run that produced it."""
    graph: KnowledgeGraph
    report: ExtractionReport = Field(default_factory=ExtractionReport)
