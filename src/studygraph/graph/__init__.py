"""Per-subject concept graph: extraction, merging, consolidation and traversal."""
from .models import (
    SourceRef,
    ConceptNode,
    ConceptEdge,
    KnowledgeGraph,
    BatchFailure,
    ExtractionReport,
    GraphBuildResult,
)
from .merge import slugify, normalize_label
from .prompts import NODE_COLORS
from .builder import GraphBuilder, graph_key, subject_collection

__all__ = [
    "SourceRef",
    "ConceptNode",
    "ConceptEdge",
    "KnowledgeGraph",
    "BatchFailure",
    "ExtractionReport",
    "GraphBuildResult",
    "slugify",
    "normalize_label",
    "NODE_COLORS",
    "GraphBuilder",
    "graph_key",
    "subject_collection",
]
