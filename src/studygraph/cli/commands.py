from __future__ import annotations
import argparse
import asyncio
import json
import logging
import sys
import uuid
from pathlib import Path

from dotenv import load_dotenv

from studygraph.config import StudyGraphConfig, load_config
from studygraph.core import KnowledgeCore
from studygraph.embeddings import create_embeddings
from studygraph.graph import ExtractionReport, subject_collection
from studygraph.knowledge_base import SourceMeta, SourceType, ingest_file
from studygraph.llm import ChatClient
from studygraph.retrieval import search_sources


def run() -> None:
    """Main CLI entry point."""
    # Load environment variables first
    load_dotenv()

    parser = argparse.ArgumentParser(
        prog="studygraph",
        description="studygraph - Semantic chunking, hybrid retrieval and concept graphs for study material"
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", help="Path to YAML config (default: $STUDYGRAPH_CONFIG)")
    sub = parser.add_subparsers(dest="cmd", required=True)

    # Ingestion
    ing = sub.add_parser("ingest", help="Chunk, embed and store a text/markdown file", parents=[common])
    ing.add_argument("--subject", required=True, help="Subject id")
    ing.add_argument("--file", required=True, help="Path to a UTF-8 text or markdown file")
    ing.add_argument("--source-id", help="Source id (default: random)")
    ing.add_argument("--mime", default="text/plain", help="MIME type recorded with the chunks")
    ing.add_argument("--source-type", default=SourceType.MATERIAL,
                     help="Source type (material, exercise, web)")

    # Retrieval
    search = sub.add_parser("search", help="Search a subject's material", parents=[common])
    search.add_argument("--subject", required=True, help="Subject id")
    search.add_argument("--query", required=True, help="Search query")
    search.add_argument("--k", type=int, default=10, help="Number of results (1-10, default: 10)")
    search.add_argument("--source-filter", help="Only files whose name contains this text")

    # Collection management
    delete = sub.add_parser("delete-source", help="Remove a source's chunks and parents", parents=[common])
    delete.add_argument("--subject", required=True, help="Subject id")
    delete.add_argument("--source-id", required=True, help="Source id to remove")

    clear = sub.add_parser("clear", help="Remove a subject's chunks, parents and concept graph", parents=[common])
    clear.add_argument("--subject", required=True, help="Subject id")

    # Concept graph
    graph = sub.add_parser("graph", help="Concept graph commands")
    graph_sub = graph.add_subparsers(dest="graph_cmd", required=True)

    expand = graph_sub.add_parser("expand", help="Merge concepts from new sources", parents=[common])
    expand.add_argument("--subject", required=True, help="Subject id")
    expand.add_argument("--source-id", required=True, nargs="+", dest="source_ids",
                        help="Source ids to extract from")

    rebuild = graph_sub.add_parser("rebuild", help="Rebuild the graph from all sources", parents=[common])
    rebuild.add_argument("--subject", required=True, help="Subject id")

    links = graph_sub.add_parser("links", help="Files linked to the given files via concepts", parents=[common])
    links.add_argument("--subject", required=True, help="Subject id")
    links.add_argument("--file", required=True, nargs="+", dest="files", help="Source file names")

    show = graph_sub.add_parser("show", help="Print the stored graph as JSON", parents=[common])
    show.add_argument("--subject", required=True, help="Subject id")

    args = parser.parse_args()

    try:
        config = load_config(args.config)
        logging.basicConfig(level=config.logging.level, format=config.logging.format)

        if args.cmd == "ingest":
            asyncio.run(ingest_cmd(
                config,
                args.subject,
                args.file,
                source_id=args.source_id,
                mime_type=args.mime,
                source_type=args.source_type,
            ))
        elif args.cmd == "search":
            asyncio.run(search_cmd(config, args.subject, args.query, args.k, args.source_filter))
        elif args.cmd == "delete-source":
            asyncio.run(delete_source_cmd(config, args.subject, args.source_id))
        elif args.cmd == "clear":
            asyncio.run(clear_cmd(config, args.subject))
        elif args.cmd == "graph":
            if args.graph_cmd == "expand":
                asyncio.run(graph_expand_cmd(config, args.subject, args.source_ids))
            elif args.graph_cmd == "rebuild":
                asyncio.run(graph_rebuild_cmd(config, args.subject))
            elif args.graph_cmd == "links":
                asyncio.run(graph_links_cmd(config, args.subject, args.files))
            elif args.graph_cmd == "show":
                asyncio.run(graph_show_cmd(config, args.subject))
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        sys.exit(130)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


async def ingest_cmd(
    config: StudyGraphConfig,
    subject_id: str,
    file_path: str,
    source_id: str | None = None,
    mime_type: str = "text/plain",
    source_type: str = SourceType.MATERIAL,
) -> None:
    """Ingest one file into a subject."""
    core = KnowledgeCore.from_config(config)
    embeddings = create_embeddings(config.embeddings)
    meta = SourceMeta(
        source_id=source_id or uuid.uuid4().hex,
        source_file=Path(file_path).name,
        mime_type=mime_type,
        subject_id=subject_id,
        source_type=source_type,
    )

    try:
        result = await ingest_file(
            file_path,
            subject_collection(subject_id),
            core.store,
            embeddings,
            meta=meta,
            config=config.chunking,
            parent_retrieval=config.retrieval.parent_retrieval,
        )
    finally:
        await core.close()

    print(f"✓ Ingested {meta.source_file} as source {result.source_id}")
    print(f"  Chunks stored: {result.chunks_stored}")
    if result.parents_stored:
        print(f"  Parents stored: {result.parents_stored}")
    print(f"  Chunks filtered: {result.chunks_filtered}")


async def search_cmd(
    config: StudyGraphConfig,
    subject_id: str,
    query: str,
    k: int,
    source_filter: str | None = None,
) -> None:
    """Search a subject and print the hits."""
    core = KnowledgeCore.from_config(config)
    embeddings = create_embeddings(config.embeddings)

    try:
        hits = await search_sources(core, subject_id, query, embeddings, k=k, source_filter=source_filter)
    finally:
        await core.close()

    if not hits:
        print("No results")
        return

    for i, hit in enumerate(hits, 1):
        location = hit.source or "unknown source"
        if hit.page is not None:
            location += f", p.{hit.page}"
        marker = " [graph]" if hit.graph_linked else ""
        print(f"{i}. {location}{marker}")
        if hit.heading:
            print(f"   {hit.heading}")
        preview = " ".join(hit.text.split())[:200]
        print(f"   {preview}")


async def delete_source_cmd(config: StudyGraphConfig, subject_id: str, source_id: str) -> None:
    core = KnowledgeCore.from_config(config)
    try:
        removed = await core.store.delete_by_source(subject_collection(subject_id), source_id)
    finally:
        await core.close()
    print(f"✓ Removed {removed} chunks of source {source_id}")


async def clear_cmd(config: StudyGraphConfig, subject_id: str) -> None:
    core = KnowledgeCore.from_config(config)
    try:
        await core.delete_subject(subject_id)
    finally:
        await core.close()
    print(f"✓ Cleared subject {subject_id}")


async def graph_expand_cmd(config: StudyGraphConfig, subject_id: str, source_ids: list[str]) -> None:
    core = KnowledgeCore.from_config(config)
    llm = ChatClient.from_config(config.llm)
    try:
        result = await core.graph.expand(subject_id, source_ids, llm)
    finally:
        await core.close()

    print(f"✓ Graph: {len(result.graph.nodes)} nodes, {len(result.graph.edges)} edges")
    _print_report(result.report)


async def graph_rebuild_cmd(config: StudyGraphConfig, subject_id: str) -> None:
    core = KnowledgeCore.from_config(config)
    llm = ChatClient.from_config(config.llm)
    try:
        result = await core.graph.rebuild(subject_id, llm)
    finally:
        await core.close()

    print(f"✓ Rebuilt graph: {len(result.graph.nodes)} nodes, {len(result.graph.edges)} edges")
    _print_report(result.report)


async def graph_links_cmd(config: StudyGraphConfig, subject_id: str, files: list[str]) -> None:
    core = KnowledgeCore.from_config(config)
    try:
        linked = await core.graph.get_linked_source_files(subject_id, files)
    finally:
        await core.close()

    if not linked:
        print("No linked files")
        return
    for name in linked:
        print(name)


async def graph_show_cmd(config: StudyGraphConfig, subject_id: str) -> None:
    core = KnowledgeCore.from_config(config)
    try:
        graph = await core.graph.get_graph(subject_id)
    finally:
        await core.close()

    if graph is None:
        print(f"No graph for subject {subject_id}")
        return
    print(json.dumps(graph.model_dump(), indent=2, ensure_ascii=False))


def _print_report(report: ExtractionReport) -> None:
    total = len(report.succeeded_batches) + len(report.failed_batches)
    print(f"  Batches: {len(report.succeeded_batches)}/{total} succeeded")
    for failure in report.failed_batches:
        print(f"  ⚠️  Batch {failure.index + 1} failed: {failure.reason}")
    if report.bridging_error:
        print(f"  ⚠️  Bridging failed: {report.bridging_error}")
    print(f"  Consolidation: {report.consolidation}")
    if report.consolidation_error:
        print(f"  ⚠️  Consolidation error: {report.consolidation_error}")
