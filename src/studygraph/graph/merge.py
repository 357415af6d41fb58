"""Turning raw LLM extractions into graph nodes and edges.

Concepts are deduplicated by normalized label. Relationships are only kept
when both endpoints resolve to distinct nodes.
"""
from __future__ import annotations
import random
import re
from dataclasses import dataclass, field
from typing import Any

from .models import ConceptEdge, ConceptNode, KnowledgeGraph, SourceRef
from .prompts import NODE_COLORS

IMPORTANCE_RANK = {"high": 0, "medium": 1, "low": 2}
DEFAULT_EDGE_LABEL = "relates-to"
DEFAULT_EDGE_WEIGHT = 0.5

_SLUG_STRIP = re.compile(r"[^a-z0-9äöüß]+")


def slugify(label: str) -> str:
    """'Linear Algebra (Intro)' -> 'linear-algebra-intro' (max 80 chars)."""
    return _SLUG_STRIP.sub("-", label.lower()).strip("-")[:80]


def normalize_label(label: str) -> str:
    """Trim, lower-case and collapse internal whitespace."""
    return " ".join(label.split()).lower()


def valid_color(color: Any, fallback: str | None = None) -> str:
    """Palette colour (upper-cased), else ``fallback``, else a random palette colour."""
    if isinstance(color, str) and color.upper() in NODE_COLORS:
        return color.upper()
    if fallback:
        return fallback
    return random.choice(NODE_COLORS)


def valid_importance(value: Any) -> str:
    return value if value in IMPORTANCE_RANK else "medium"


def coerce_weight(value: Any) -> float:
    """Numeric weight clamped to [0, 1], 0.5 for anything else."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return DEFAULT_EDGE_WEIGHT
    return max(0.0, min(1.0, float(value)))


def _coerce_page(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


# ============ Raw extraction ============

@dataclass
class RawConcept:
    label: str
    description: str = ""
    category: str = ""
    importance: Any = None
    color: Any = None
    sources: list[SourceRef] = field(default_factory=list)


@dataclass
class RawRelationship:
    source_label: str
    target_label: str
    label: str = DEFAULT_EDGE_LABEL
    weight: float = DEFAULT_EDGE_WEIGHT


def parse_sources(raw: Any) -> list[SourceRef]:
    """Sources attributed by the LLM, skipping entries without a file."""
    if not isinstance(raw, list):
        return []
    sources = []
    for entry in raw:
        if isinstance(entry, dict) and _text(entry.get("file")):
            sources.append(SourceRef(file=_text(entry["file"]), page=_coerce_page(entry.get("page"))))
    return sources


def parse_concepts(data: dict, fallback_sources: list[SourceRef] | None = None) -> list[RawConcept]:
    """Concepts with a label. Those with no attributed sources get ``fallback_sources``."""
    concepts = []
    for entry in data.get("concepts") or []:
        if not isinstance(entry, dict) or not _text(entry.get("label")):
            continue
        sources = parse_sources(entry.get("sources"))
        concepts.append(RawConcept(
            label=_text(entry["label"]),
            description=_text(entry.get("description")),
            category=_text(entry.get("category")),
            importance=entry.get("importance"),
            color=entry.get("color"),
            sources=sources or list(fallback_sources or []),
        ))
    return concepts


def parse_relationships(data: dict) -> list[RawRelationship]:
    """Relationships with both endpoints named."""
    relationships = []
    for entry in data.get("relationships") or []:
        if not isinstance(entry, dict):
            continue
        source, target = _text(entry.get("from")), _text(entry.get("to"))
        if not source or not target:
            continue
        relationships.append(RawRelationship(
            source_label=source,
            target_label=target,
            label=_text(entry.get("label")) or DEFAULT_EDGE_LABEL,
            weight=coerce_weight(entry.get("weight")),
        ))
    return relationships


# ============ Accumulator ============

class GraphAccumulator:
    """Mutable working copy of a graph that concepts and relationships merge into."""

    def __init__(self, graph: KnowledgeGraph | None = None):
        self.nodes: dict[str, ConceptNode] = {}
        self.label_to_id: dict[str, str] = {}
        self.edges: dict[str, ConceptEdge] = {}

        if graph is not None:
            for node in graph.nodes:
                self.nodes[node.id] = node.model_copy(deep=True)
                self.label_to_id[normalize_label(node.label)] = node.id
            for edge in graph.edges:
                self.edges[edge.key()] = edge.model_copy()

    def resolve(self, label: str) -> str | None:
        return self.label_to_id.get(normalize_label(label))

    def _unique_id(self, label: str) -> str:
        base = slugify(label) or f"node-{len(self.nodes)}"
        node_id = base
        suffix = 2
        while node_id in self.nodes:
            node_id = f"{base}-{suffix}"
            suffix += 1
        return node_id

    def add_concept(self, concept: RawConcept) -> bool:
        """Merge a concept into the graph.

        Returns:
            True if a new node was created
        """
        existing_id = self.resolve(concept.label)

        if existing_id is not None:
            node = self.nodes[existing_id]
            if len(concept.description) > len(node.description):
                node.description = concept.description
            known = {s.key() for s in node.sources}
            for source in concept.sources:
                if source.key() not in known:
                    node.sources.append(source)
                    known.add(source.key())
            if concept.importance == "high":
                node.importance = "high"
            elif concept.importance == "medium" and node.importance == "low":
                node.importance = "medium"
            return False

        node_id = self._unique_id(concept.label)
        self.label_to_id[normalize_label(concept.label)] = node_id
        self.nodes[node_id] = ConceptNode(
            id=node_id,
            label=concept.label,
            description=concept.description,
            category=concept.category or "term",
            importance=valid_importance(concept.importance),
            color=valid_color(concept.color),
            sources=list(concept.sources),
        )
        return True

    def add_relationship(self, rel: RawRelationship) -> bool:
        """Add an edge if both endpoints resolve, differ, and the edge is new."""
        source_id = self.resolve(rel.source_label)
        target_id = self.resolve(rel.target_label)
        if source_id is None or target_id is None or source_id == target_id:
            return False

        edge = ConceptEdge(source=source_id, target=target_id, label=rel.label, weight=rel.weight)
        if edge.key() in self.edges:
            return False
        self.edges[edge.key()] = edge
        return True

    def node_list(self) -> list[ConceptNode]:
        return list(self.nodes.values())

    def edge_list(self) -> list[ConceptEdge]:
        return list(self.edges.values())

    def source_files(self) -> set[str]:
        return {s.file for node in self.nodes.values() for s in node.sources}


def rebuild_from_consolidation(data: dict, previous: GraphAccumulator) -> GraphAccumulator:
    """Build a graph from a consolidation response.

    Nodes that keep a known label keep their id, sources and (if the model
    gave no valid colour) their colour.

    Raises:
        ValueError: If the response holds no usable concepts
    """
    result = GraphAccumulator()

    for entry in data.get("concepts") or []:
        if not isinstance(entry, dict) or not _text(entry.get("label")):
            continue
        label = _text(entry["label"])
        norm = normalize_label(label)
        if norm in result.label_to_id:
            continue

        old_id = previous.resolve(label)
        old = previous.nodes.get(old_id) if old_id else None
        node_id = old_id if old_id and old_id not in result.nodes else result._unique_id(label)

        result.label_to_id[norm] = node_id
        result.nodes[node_id] = ConceptNode(
            id=node_id,
            label=label,
            description=_text(entry.get("description")) or (old.description if old else ""),
            category=_text(entry.get("category")) or (old.category if old else "term"),
            importance=valid_importance(entry.get("importance")),
            color=valid_color(entry.get("color"), fallback=old.color if old else None),
            sources=[s.model_copy() for s in old.sources] if old else [],
        )

    if not result.nodes:
        raise ValueError("consolidation returned no concepts")

    for rel in parse_relationships(data):
        result.add_relationship(rel)

    return result


def trim_by_importance(
    nodes: list[ConceptNode],
    edges: list[ConceptEdge],
    limit: int,
) -> tuple[list[ConceptNode], list[ConceptEdge]]:
    """Keep the ``limit`` most important nodes (stable) and drop dangling edges."""
    kept = sorted(nodes, key=lambda n: IMPORTANCE_RANK[n.importance])[:limit]
    ids = {n.id for n in kept}
    return kept, [e for e in edges if e.source in ids and e.target in ids]


def trim_edges(edges: list[ConceptEdge], limit: int) -> list[ConceptEdge]:
    """Keep the ``limit`` heaviest edges."""
    if len(edges) <= limit:
        return edges
    return sorted(edges, key=lambda e: e.weight, reverse=True)[:limit]
