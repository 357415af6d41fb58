"""Incremental concept graph builder.

Extracts concepts and relationships from a subject's chunks with an LLM,
merges them into the stored graph, bridges new concepts to existing ones,
and keeps the graph within size limits proportional to the number of source
files.

Usage:
    builder = GraphBuilder(store, kv, config.graph)
    result = await builder.expand("42", ["src-1"], llm)
    if not result.report.ok:
        ...
"""
from __future__ import annotations
import json
import logging
import time

from pydantic import ValidationError

from studygraph.config import GraphConfig
from studygraph.exceptions import GraphBuildError
from studygraph.knowledge_base.models import Chunk
from studygraph.llm import LLMGateway, parse_json_object
from studygraph.storage import CollectionStore, KeyedLock, KeyValueStore

from .merge import (
    GraphAccumulator,
    RawConcept,
    RawRelationship,
    parse_concepts,
    parse_relationships,
    rebuild_from_consolidation,
    trim_by_importance,
    trim_edges,
)
from .models import (
    BatchFailure,
    ConceptEdge,
    ConceptNode,
    ExtractionReport,
    GraphBuildResult,
    KnowledgeGraph,
    SourceRef,
)
from .prompts import CONNECTION_PROMPT, CONSOLIDATION_PROMPT, EXTRACTION_PROMPT, JSON_ONLY_SUFFIX

logger = logging.getLogger(__name__)


def subject_collection(subject_id: str) -> str:
    return f"subject:{subject_id}"


def graph_key(subject_id: str) -> str:
    return f"subject:{subject_id}:graph"


def format_batch(batch: list[Chunk]) -> str:
    """Join chunks, each under a ``[Source: file, p.N]`` header when known."""
    parts = []
    for chunk in batch:
        if chunk.source_file:
            page = f", p.{chunk.page_number}" if chunk.page_number is not None else ""
            parts.append(f"[Source: {chunk.source_file}{page}]\n{chunk.content}")
        else:
            parts.append(chunk.content)
    return "\n\n---\n\n".join(parts)


def batch_sources(batch: list[Chunk]) -> list[SourceRef]:
    """Distinct (file, page) pairs of a batch, in order."""
    seen = set()
    sources = []
    for chunk in batch:
        if not chunk.source_file:
            continue
        ref = SourceRef(file=chunk.source_file, page=chunk.page_number)
        if ref.key() not in seen:
            seen.add(ref.key())
            sources.append(ref)
    return sources


class GraphBuilder:
    """Builds and maintains one concept graph per subject."""

    def __init__(
        self,
        store: CollectionStore,
        kv: KeyValueStore,
        config: GraphConfig | None = None,
        locks: KeyedLock | None = None,
    ):
        self.store = store
        self.kv = kv
        self.config = config or GraphConfig()
        self.locks = locks if locks is not None else store.locks

    # ============ Persistence ============

    async def get_graph(self, subject_id: str) -> KnowledgeGraph | None:
        data = await self.kv.get(graph_key(subject_id))
        if data is None:
            return None
        try:
            return KnowledgeGraph.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed graph for subject {subject_id}: {e}")
            return None

    async def save_graph(self, subject_id: str, graph: KnowledgeGraph) -> None:
        await self.kv.set(graph_key(subject_id), graph.model_dump())

    async def delete_graph(self, subject_id: str) -> bool:
        return await self.kv.delete(graph_key(subject_id))

    # ============ Limits ============

    def node_limit(self, source_count: int) -> int:
        return max(self.config.min_nodes, source_count * self.config.nodes_per_source)

    def edge_limit(self, source_count: int) -> int:
        return max(self.config.min_edges, source_count * self.config.edges_per_source)

    # ============ Operations ============

    async def expand(
        self,
        subject_id: str,
        source_ids: list[str],
        llm: LLMGateway,
    ) -> GraphBuildResult:
        """Merge concepts from the given sources into the subject's graph.

        Returns the existing graph unchanged (and unsaved) when the sources
        have no chunks.
        """
        async with self.locks.hold(f"graph:{subject_id}"):
            existing = await self.get_graph(subject_id) or KnowledgeGraph()
            chunks = await self.store.get_all(subject_collection(subject_id), source_ids)
            if not chunks:
                logger.info(f"No chunks for subject {subject_id} sources {source_ids}, graph unchanged")
                return GraphBuildResult(graph=existing)

            report = ExtractionReport()
            concepts, relationships = await self._extract(chunks, llm, report)

            acc = GraphAccumulator(existing)
            existing_labels = [n.label for n in existing.nodes]
            new_labels = [c.label for c in concepts if acc.add_concept(c)]
            for rel in relationships:
                acc.add_relationship(rel)

            if existing_labels and new_labels:
                for rel in await self._bridge(existing_labels, new_labels, llm, report):
                    acc.add_relationship(rel)

            files = {s.file for n in existing.nodes for s in n.sources}
            files.update(c.source_file for c in chunks if c.source_file)
            source_count = len(files)

            nodes, edges = await self._apply_limits(acc, source_count, llm, report)
            graph = KnowledgeGraph(
                nodes=nodes,
                edges=edges,
                generated_at=int(time.time() * 1000),
                source_count=source_count,
            )
            await self.save_graph(subject_id, graph)

        logger.info(
            f"Expanded graph for subject {subject_id}: {len(graph.nodes)} nodes, "
            f"{len(graph.edges)} edges, {len(new_labels)} new concepts"
        )
        return GraphBuildResult(graph=graph, report=report)

    async def rebuild(self, subject_id: str, llm: LLMGateway) -> GraphBuildResult:
        """Discard the stored graph and extract a new one from all chunks.

        Raises:
            GraphBuildError: If the subject has no chunks
        """
        async with self.locks.hold(f"graph:{subject_id}"):
            await self.delete_graph(subject_id)

            chunks = await self.store.get_all(subject_collection(subject_id))
            if not chunks:
                raise GraphBuildError("No documents found for this subject")

            source_count = len({c.source_file for c in chunks if c.source_file})
            report = ExtractionReport()
            concepts, relationships = await self._extract(chunks, llm, report)

            acc = GraphAccumulator()
            for concept in concepts:
                acc.add_concept(concept)
            for rel in relationships:
                acc.add_relationship(rel)

            nodes, edges = await self._apply_limits(acc, source_count, llm, report)
            graph = KnowledgeGraph(
                nodes=nodes,
                edges=edges,
                generated_at=int(time.time() * 1000),
                source_count=source_count,
            )
            await self.save_graph(subject_id, graph)

        logger.info(f"Rebuilt graph for subject {subject_id}: {len(graph.nodes)} nodes, {len(graph.edges)} edges")
        return GraphBuildResult(graph=graph, report=report)

    async def get_linked_source_files(self, subject_id: str, source_files: list[str]) -> list[str]:
        """Files one concept-hop away from the given files.

        Nodes sourced from the input files are matched; their neighbours
        outside the matched set contribute their files, minus the inputs.
        """
        graph = await self.get_graph(subject_id)
        if graph is None or not graph.nodes:
            return []

        inputs = set(source_files)
        matched = {n.id for n in graph.nodes if any(s.file in inputs for s in n.sources)}
        if not matched:
            return []

        neighbours = set()
        for edge in graph.edges:
            if edge.source in matched and edge.target not in matched:
                neighbours.add(edge.target)
            if edge.target in matched and edge.source not in matched:
                neighbours.add(edge.source)

        linked: list[str] = []
        for node in graph.nodes:
            if node.id not in neighbours:
                continue
            for source in node.sources:
                if source.file not in inputs and source.file not in linked:
                    linked.append(source.file)
        return linked

    # ============ LLM steps ============

    async def _extract(
        self,
        chunks: list[Chunk],
        llm: LLMGateway,
        report: ExtractionReport,
    ) -> tuple[list[RawConcept], list[RawRelationship]]:
        """Run extraction batch by batch. Failed batches are recorded, not raised."""
        size = self.config.batch_size
        batches = [chunks[i:i + size] for i in range(0, len(chunks), size)]
        logger.info(f"Extracting concepts from {len(chunks)} chunks in {len(batches)} batches")

        concepts: list[RawConcept] = []
        relationships: list[RawRelationship] = []

        for i, batch in enumerate(batches):
            logger.debug(f"Batch {i + 1}/{len(batches)}")
            try:
                batch_concepts, batch_relationships = await self._extract_batch(batch, llm)
            except Exception as e:
                logger.warning(f"Extraction batch {i + 1}/{len(batches)} failed: {e}")
                report.failed_batches.append(BatchFailure(index=i, reason=str(e) or type(e).__name__))
                continue
            concepts.extend(batch_concepts)
            relationships.extend(batch_relationships)
            report.succeeded_batches.append(i)

        return concepts, relationships

    async def _extract_batch(
        self,
        batch: list[Chunk],
        llm: LLMGateway,
    ) -> tuple[list[RawConcept], list[RawRelationship]]:
        response = await llm.invoke([
            {"role": "system", "content": EXTRACTION_PROMPT},
            {"role": "user", "content": format_batch(batch) + JSON_ONLY_SUFFIX},
        ])
        data = parse_json_object(response)
        if data is None or not isinstance(data.get("concepts"), list):
            raise ValueError("response did not contain a concepts JSON object")

        return parse_concepts(data, batch_sources(batch)), parse_relationships(data)

    async def _bridge(
        self,
        existing_labels: list[str],
        new_labels: list[str],
        llm: LLMGateway,
        report: ExtractionReport,
    ) -> list[RawRelationship]:
        """Ask for relationships between new and pre-existing concepts."""
        existing = existing_labels[:self.config.bridge_existing_limit]
        new = new_labels[:self.config.bridge_new_limit]
        try:
            response = await llm.invoke([
                {"role": "system", "content": CONNECTION_PROMPT},
                {
                    "role": "user",
                    "content": (
                        f"EXISTING concepts: {json.dumps(existing, ensure_ascii=False)}\n\n"
                        f"NEW concepts: {json.dumps(new, ensure_ascii=False)}"
                        f"{JSON_ONLY_SUFFIX}"
                    ),
                },
            ])
        except Exception as e:
            logger.warning(f"Bridging new concepts failed: {e}")
            report.bridging_error = str(e) or type(e).__name__
            return []

        data = parse_json_object(response)
        if data is None or not isinstance(data.get("relationships"), list):
            logger.warning("Bridging response was not a relationships JSON object")
            report.bridging_error = "response did not contain a relationships JSON object"
            return []

        return parse_relationships(data)

    async def _apply_limits(
        self,
        acc: GraphAccumulator,
        source_count: int,
        llm: LLMGateway,
        report: ExtractionReport,
    ) -> tuple[list[ConceptNode], list[ConceptEdge]]:
        """Consolidate or trim nodes, then cap edges by weight."""
        node_limit = self.node_limit(source_count)
        edge_limit = self.edge_limit(source_count)
        nodes, edges = acc.node_list(), acc.edge_list()

        if len(nodes) > node_limit:
            logger.info(f"Graph has {len(nodes)} nodes (limit {node_limit}), consolidating")
            try:
                consolidated = await self._consolidate(acc, node_limit, edge_limit, llm)
            except Exception as e:
                logger.warning(f"Consolidation failed, trimming by importance: {e}")
                report.consolidation_error = str(e) or type(e).__name__
                report.consolidation = "trimmed"
                nodes, edges = trim_by_importance(nodes, edges, node_limit)
            else:
                report.consolidation = "llm"
                nodes, edges = consolidated.node_list(), consolidated.edge_list()
                if len(nodes) > node_limit:
                    nodes, edges = trim_by_importance(nodes, edges, node_limit)

        return nodes, trim_edges(edges, edge_limit)

    async def _consolidate(
        self,
        acc: GraphAccumulator,
        node_limit: int,
        edge_limit: int,
        llm: LLMGateway,
    ) -> GraphAccumulator:
        nodes, edges = acc.node_list(), acc.edge_list()
        summary = json.dumps({
            "concepts": [
                {
                    "label": n.label,
                    "description": n.description,
                    "category": n.category,
                    "importance": n.importance,
                }
                for n in nodes
            ],
            "relationships": [
                {
                    "from": acc.nodes[e.source].label,
                    "to": acc.nodes[e.target].label,
                    "label": e.label,
                    "weight": e.weight,
                }
                for e in edges
            ],
        }, ensure_ascii=False)

        response = await llm.invoke([
            {"role": "system", "content": CONSOLIDATION_PROMPT},
            {
                "role": "user",
                "content": (
                    f"Current graph ({len(nodes)} nodes, {len(edges)} edges). "
                    f"Target size: ~{node_limit} nodes, ~{edge_limit} edges.\n"
                    f"{summary}{JSON_ONLY_SUFFIX}"
                ),
            },
        ])
        data = parse_json_object(response)
        if data is None:
            raise ValueError("consolidation response was not a JSON object")
        return rebuild_from_consolidation(data, acc)
