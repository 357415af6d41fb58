"""Tests for the collection store and JSON persistence."""
import asyncio
import json
import time

import pytest

from studygraph.config import RetrievalConfig, StorageConfig, StudyGraphConfig
from studygraph.core import KnowledgeCore
from studygraph.graph import KnowledgeGraph
from studygraph.knowledge_base import ParentChunk
from studygraph.retrieval import EmptyRetriever, HybridRetriever, ParentResolvingRetriever, RetrieverRegistry
from studygraph.storage import CollectionStore, JsonChunkBackend, KeyedLock, KeyValueStore, ParentStore, backends
from studygraph.storage.jsonfile import read_json, safe_name, write_json_atomic
from tests.conftest import make_chunk

COLLECTION = "subject:s1"


def _source_chunks(source_id, count, parent_id=None):
    chunks = []
    for i in range(count):
        metadata = {"source_id": source_id, "chunk_index": i}
        if parent_id:
            metadata["parent_id"] = parent_id
        chunks.append(make_chunk(f"Chunk {i} of {source_id} about photosynthesis.", **metadata))
    return chunks


def test_safe_name():
    assert safe_name("subject:42") == "subject_42"
    assert safe_name("graph/../x y") == "graph_.._x_y"


def test_write_json_atomic_leaves_no_temp_files(tmp_path):
    path = tmp_path / "json" / "data.json"

    write_json_atomic(path, {"a": 1})
    write_json_atomic(path, {"a": 2})

    assert read_json(path, {}) == {"a": 2}
    assert [p.name for p in path.parent.iterdir()] == ["data.json"]


def test_read_json_wrong_type_returns_default(tmp_path):
    path = tmp_path / "data.json"
    path.write_text('{"not": "a list"}', encoding="utf-8")

    assert read_json(path, []) == []


@pytest.mark.asyncio
async def test_save_and_get_all(core, embeddings):
    chunks = _source_chunks("src-1", 3)

    await core.store.save(COLLECTION, chunks, embeddings)

    stored = await core.store.get_all(COLLECTION)
    assert [c.content for c in stored] == [c.content for c in chunks]
    assert stored[0].metadata == {"source_id": "src-1", "chunk_index": 0}
    assert await core.store.count(COLLECTION) == 3


@pytest.mark.asyncio
async def test_collection_file_location(core, config, embeddings):
    await core.store.save(COLLECTION, _source_chunks("src-1", 1), embeddings)

    path = config.storage.root + "/json/subject_s1.json"
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    assert data == [{
        "content": "Chunk 0 of src-1 about photosynthesis.",
        "metadata": {"source_id": "src-1", "chunk_index": 0},
    }]


@pytest.mark.asyncio
async def test_concurrent_saves_lose_nothing(core, embeddings):
    await asyncio.gather(*(
        core.store.save(COLLECTION, _source_chunks(f"src-{i}", 1), embeddings)
        for i in range(10)
    ))

    assert await core.store.count(COLLECTION) == 10


@pytest.mark.asyncio
async def test_delete_by_source_removes_chunks_and_parents(core, embeddings):
    await core.store.save(COLLECTION, _source_chunks("keep", 7, parent_id="p-keep"), embeddings)
    await core.store.save(COLLECTION, _source_chunks("drop", 3, parent_id="p-drop"), embeddings)
    await core.store.parents.save_parents(COLLECTION, [
        ParentChunk(parent_id="p-keep", content="kept parent", metadata={"source_id": "keep"}),
        ParentChunk(parent_id="p-drop", content="dropped parent", metadata={"source_id": "drop"}),
    ])

    removed = await core.store.delete_by_source(COLLECTION, "drop")

    assert removed == 3
    assert await core.store.count(COLLECTION) == 7
    assert await core.store.parents.get_parent(COLLECTION, "p-drop") is None
    assert await core.store.parents.get_parent(COLLECTION, "p-keep") is not None


@pytest.mark.asyncio
async def test_delete_unknown_source_is_noop(core, embeddings):
    await core.store.save(COLLECTION, _source_chunks("src-1", 2), embeddings)

    assert await core.store.delete_by_source(COLLECTION, "missing") == 0
    assert await core.store.count(COLLECTION) == 2


@pytest.mark.asyncio
async def test_get_all_source_filter(core, embeddings):
    await core.store.save(COLLECTION, _source_chunks("a", 2) + _source_chunks("b", 3), embeddings)

    only_b = await core.store.get_all(COLLECTION, source_ids=["b"])
    assert len(only_b) == 3
    assert all(c.source_id == "b" for c in only_b)

    assert len(await core.store.get_all(COLLECTION, source_ids=[])) == 5
    assert await core.store.get_all(COLLECTION, source_ids=["zzz"]) == []


@pytest.mark.asyncio
async def test_clear(core, embeddings):
    await core.store.save(COLLECTION, _source_chunks("src-1", 2, parent_id="p1"), embeddings)
    await core.store.parents.save_parents(
        COLLECTION, [ParentChunk(parent_id="p1", content="parent", metadata={"source_id": "src-1"})]
    )

    await core.store.clear(COLLECTION)

    assert await core.store.count(COLLECTION) == 0
    assert await core.store.parents.count(COLLECTION) == 0


@pytest.mark.asyncio
async def test_malformed_collection_file_reads_empty(core):
    path = core.store.backend.path_for(COLLECTION)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("{not json", encoding="utf-8")

    assert await core.store.get_all(COLLECTION) == []
    assert await core.store.count(COLLECTION) == 0


@pytest.mark.asyncio
async def test_empty_collection_gives_empty_retriever(core, embeddings):
    retriever = await core.store.get_retriever("subject:none", embeddings)

    assert isinstance(retriever, EmptyRetriever)
    assert await retriever.invoke("anything") == []
    assert embeddings.document_calls == []


@pytest.mark.asyncio
async def test_retriever_cached_until_write(core, embeddings):
    await core.store.save(COLLECTION, _source_chunks("src-1", 3), embeddings)

    first = await core.store.get_retriever(COLLECTION, embeddings, k=2)
    assert isinstance(first, HybridRetriever)
    assert embeddings.document_calls == [3]

    second = await core.store.get_retriever(COLLECTION, embeddings, k=5)
    assert second.index is first.index
    assert second.k == 5
    assert embeddings.document_calls == [3]

    await core.store.save(COLLECTION, _source_chunks("src-2", 1), embeddings)
    assert COLLECTION not in core.registry

    third = await core.store.get_retriever(COLLECTION, embeddings)
    assert third.index is not first.index
    assert len(third.index) == 4
    assert embeddings.document_calls == [3, 4]


@pytest.mark.asyncio
async def test_concurrent_first_queries_build_once(core, embeddings):
    await core.store.save(COLLECTION, _source_chunks("src-1", 4), embeddings)

    retrievers = await asyncio.gather(*(
        core.store.get_retriever(COLLECTION, embeddings) for _ in range(5)
    ))

    assert embeddings.document_calls == [4]
    assert len({id(r.index) for r in retrievers}) == 1


@pytest.mark.asyncio
async def test_retriever_returns_at_most_k(core, embeddings):
    await core.store.save(COLLECTION, _source_chunks("src-1", 10), embeddings)

    retriever = await core.store.get_retriever(COLLECTION, embeddings, k=4)
    results = await retriever.invoke("photosynthesis chunk")

    assert len(results) == 4


@pytest.mark.asyncio
async def test_retriever_with_parents_respects_config(tmp_path, embeddings):
    enabled = KnowledgeCore.from_config(
        StudyGraphConfig(storage=StorageConfig(root=str(tmp_path / "a")))
    )
    disabled = KnowledgeCore.from_config(StudyGraphConfig(
        storage=StorageConfig(root=str(tmp_path / "b")),
        retrieval=RetrievalConfig(parent_retrieval=False),
    ))
    for core in (enabled, disabled):
        await core.store.save(COLLECTION, _source_chunks("src-1", 2), embeddings)

    with_parents = await enabled.store.get_retriever_with_parents(COLLECTION, embeddings, k=3)
    assert isinstance(with_parents, ParentResolvingRetriever)
    assert with_parents.k == 3
    assert with_parents.base.k == 6

    plain = await disabled.store.get_retriever_with_parents(COLLECTION, embeddings, k=3)
    assert isinstance(plain, HybridRetriever)
    assert plain.k == 3


def test_core_shares_one_lock_set(core):
    assert len(core.locks) == 0
    assert core.store.parents.locks is core.locks
    assert core.graph.locks is core.locks
    assert isinstance(core.store.backend, JsonChunkBackend)


@pytest.mark.asyncio
async def test_kv_store_roundtrip_and_malformed(tmp_path):
    kv = KeyValueStore(tmp_path)

    assert await kv.get("graph:s1") is None
    await kv.set("graph:s1", {"nodes": []})
    assert await kv.get("graph:s1") == {"nodes": []}

    kv.path_for("graph:s2").write_text("[]", encoding="utf-8")
    assert await kv.get("graph:s2") is None

    assert await kv.delete("graph:s1") is True
    assert await kv.delete("graph:s1") is False


def test_empty_lock_set_and_registry_are_kept(tmp_path):
    locks = KeyedLock()
    registry = RetrieverRegistry()
    parents = ParentStore(tmp_path, locks)

    store = CollectionStore(JsonChunkBackend(tmp_path), parents, locks=locks, registry=registry)

    assert parents.locks is locks
    assert store.locks is locks
    assert store.registry is registry


@pytest.mark.asyncio
async def test_wrongly_shaped_collection_entries_skipped(core):
    path = core.store.backend.path_for(COLLECTION)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps([
        1,
        "x",
        {"content": "orphan", "metadata": None},
        {"content": "kept", "metadata": {"source_id": "a"}},
    ]), encoding="utf-8")

    assert await core.store.count(COLLECTION) == 2
    assert [c.content for c in await core.store.get_all(COLLECTION)] == ["orphan", "kept"]

    assert await core.store.delete_by_source(COLLECTION, "a") == 1
    assert [c.content for c in await core.store.get_all(COLLECTION)] == ["orphan"]


@pytest.mark.asyncio
async def test_wrongly_shaped_parent_entries_skipped(core, embeddings):
    await core.store.save(COLLECTION, _source_chunks("s", 1, parent_id="p1"), embeddings)
    path = core.store.parents.path_for(COLLECTION)
    path.write_text(json.dumps({
        "p1": {"content": "Parent about photosynthesis.", "metadata": None},
        "p2": "junk",
        "p3": {"content": 5, "metadata": {"source_id": "s"}},
    }), encoding="utf-8")

    parents = await core.store.parents.get_parents(COLLECTION, ["p1", "p2", "p3"])
    assert sorted(parents) == ["p1", "p3"]
    assert parents["p1"].metadata == {}
    assert parents["p3"].content == ""
    assert await core.store.parents.count(COLLECTION) == 2

    retriever = await core.store.get_retriever_with_parents(COLLECTION, embeddings, k=2)
    results = await retriever.invoke("photosynthesis")
    assert [r.content for r in results] == ["Parent about photosynthesis."]

    assert await core.store.parents.delete_by_source(COLLECTION, "s") == 1


@pytest.mark.asyncio
async def test_json_writes_do_not_block_event_loop(core, embeddings, monkeypatch):
    def slow_write(path, data):
        time.sleep(0.2)
        write_json_atomic(path, data)

    monkeypatch.setattr(backends, "write_json_atomic", slow_write)
    ticks = 0
    done = asyncio.Event()

    async def ticker():
        nonlocal ticks
        while not done.is_set():
            await asyncio.sleep(0.005)
            ticks += 1

    task = asyncio.create_task(ticker())
    await core.store.save(COLLECTION, _source_chunks("src-1", 2), embeddings)
    done.set()
    await task

    assert ticks > 5
    assert await core.store.count(COLLECTION) == 2


@pytest.mark.asyncio
async def test_delete_subject_removes_chunks_parents_and_graph(core, embeddings):
    await core.store.save(COLLECTION, _source_chunks("s", 2, parent_id="p1"), embeddings)
    await core.store.parents.save_parents(COLLECTION, [
        ParentChunk(parent_id="p1", content="parent", metadata={"source_id": "s"}),
    ])
    await core.graph.save_graph("s1", KnowledgeGraph(source_count=1))
    assert await core.graph.get_graph("s1") is not None

    await core.delete_subject("s1")

    assert await core.store.count(COLLECTION) == 0
    assert await core.store.parents.count(COLLECTION) == 0
    assert await core.graph.get_graph("s1") is None
