"""Hybrid retrieval, parent resolution and graph-expanded search."""
from .hybrid import (
    Retriever,
    DenseIndex,
    NumpyVectorIndex,
    LexicalIndex,
    HybridIndex,
    HybridRetriever,
    EmptyRetriever,
    reciprocal_rank_fusion,
)
from .registry import RetrieverRegistry
from .parents import ParentResolvingRetriever
from .graph_search import SourceHit, search_sources

__all__ = [
    "Retriever",
    "DenseIndex",
    "NumpyVectorIndex",
    "LexicalIndex",
    "HybridIndex",
    "HybridRetriever",
    "EmptyRetriever",
    "reciprocal_rank_fusion",
    "RetrieverRegistry",
    "ParentResolvingRetriever",
    "SourceHit",
    "search_sources",
]
