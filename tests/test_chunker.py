"""Tests for semantic chunking and two-tier splitting."""
import pytest

from studygraph.config import ChunkingConfig
from studygraph.knowledge_base.chunker import (
    SemanticChunker,
    cosine_similarity,
    fixed_size_split,
    percentile,
    semantic_chunk,
    sliding_windows,
    split_sentences,
    split_with_children,
    structural_segments,
)

CAT_SENTENCES = [
    "The cat sleeps on the warm windowsill every afternoon.",
    "A hungry cat waits patiently beside the food bowl.",
    "Our cat chases shadows across the living room floor.",
    "Every cat needs fresh water and a quiet place to rest.",
    "The neighbour's cat climbs the fence at dawn.",
    "That cat purrs loudly whenever someone brushes its fur.",
]

ROCKET_SENTENCES = [
    "The rocket lifted off from the launch pad at noon.",
    "Engineers fuelled the rocket with liquid oxygen overnight.",
    "Each rocket stage separates once its fuel is spent.",
    "The rocket reached orbit eight minutes after launch.",
    "A reusable rocket booster landed on the drone ship.",
    "Telemetry from the rocket streamed back to mission control.",
]


def test_heading_becomes_its_own_segment():
    """A heading line forms a segment; the body follows separately."""
    body = " ".join(CAT_SENTENCES)
    segments = structural_segments("# Title\n" + body)

    assert segments == ["# Title", body]


def test_horizontal_rule_separates_and_is_dropped():
    segments = structural_segments("First part.\n---\nSecond part.")

    assert segments == ["First part.", "Second part."]


def test_code_fence_kept_whole():
    """Lines inside a fence are never boundaries."""
    text = "Intro text.\n```python\n# not a heading\nx = 1\n```\nOutro text."
    segments = structural_segments(text)

    assert segments == [
        "Intro text.",
        "```python\n# not a heading\nx = 1\n```",
        "Outro text.",
    ]


def test_empty_segments_dropped():
    assert structural_segments("\n\n   \n") == []
    assert structural_segments("# A\n# B") == ["# A", "# B"]


def test_split_sentences_strips_and_drops_empty():
    sentences = split_sentences("  The cat sat down.   The dog ran away.  ")

    assert sentences == ["The cat sat down.", "The dog ran away."]


def test_sliding_windows_centered():
    windows = sliding_windows(["s0", "s1", "s2", "s3", "s4"], 3)

    assert windows[0] == ["s0", "s1", "s2"]
    assert windows[1] == ["s0", "s1", "s2"]
    assert windows[2] == ["s1", "s2", "s3"]
    assert windows[4] == ["s3", "s4"]


def test_cosine_similarity():
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([0.0, 0.0], [1.0, 2.0]) == 0.0


def test_percentile_nearest_rank():
    values = [0.9, 0.1, 0.5, 0.3]

    assert percentile(values, 25) == 0.3
    assert percentile(values, 0) == 0.1
    assert percentile(values, 100) == 0.9


@pytest.mark.asyncio
async def test_empty_text_yields_no_chunks(embeddings):
    assert await semantic_chunk("", embeddings) == []
    assert await semantic_chunk("   \n\n  ", embeddings) == []


@pytest.mark.asyncio
async def test_short_text_uses_fallback_splitter(embeddings):
    """Fewer than five sentences: same output as the fixed-size splitter, no embedding calls."""
    text = "Photosynthesis converts light into chemical energy. It happens in chloroplasts. Plants need it."

    chunks = await semantic_chunk(text, embeddings)

    assert [c.content for c in chunks] == fixed_size_split(text, 1024, 128)
    assert embeddings.document_calls == []


@pytest.mark.asyncio
async def test_topic_shift_creates_boundary(topic_embeddings):
    text = " ".join(CAT_SENTENCES + ROCKET_SENTENCES)
    config = ChunkingConfig(min_chunk=50)

    chunks = await semantic_chunk(text, topic_embeddings, config)

    assert len(chunks) == 2
    assert chunks[0].content == " ".join(CAT_SENTENCES)
    assert chunks[1].content == " ".join(ROCKET_SENTENCES)
    assert [c.metadata["chunk_index"] for c in chunks] == [0, 1]
    assert all(c.metadata["total_chunks"] == 2 for c in chunks)


@pytest.mark.asyncio
async def test_indices_contiguous_across_segments(topic_embeddings):
    text = "# Pets\n" + " ".join(CAT_SENTENCES) + "\n# Space\n" + " ".join(ROCKET_SENTENCES)

    chunks = await semantic_chunk(text, topic_embeddings, ChunkingConfig(min_chunk=50))

    assert [c.metadata["chunk_index"] for c in chunks] == list(range(len(chunks)))
    assert chunks[0].content == "# Pets"
    assert all(c.metadata["total_chunks"] == len(chunks) for c in chunks)


@pytest.mark.asyncio
async def test_embedding_batches_bounded(topic_embeddings):
    text = " ".join((CAT_SENTENCES + ROCKET_SENTENCES) * 3)
    config = ChunkingConfig(embed_batch_size=8, min_chunk=50)

    await semantic_chunk(text, topic_embeddings, config)

    assert sum(topic_embeddings.document_calls) == 36
    assert max(topic_embeddings.document_calls) <= 8


def test_enforce_min_max_merges_and_attaches_tail():
    chunker = SemanticChunker(ChunkingConfig(min_chunk=50, max_chunk=2048))
    a, b, c, d = "a" * 30, "b" * 30, "c" * 300, "d" * 10

    result = chunker._enforce_min_max([a, b, c, d])

    assert result == [f"{a} {b}", f"{c} {d}"]


def test_enforce_min_max_single_short_chunk_kept():
    chunker = SemanticChunker(ChunkingConfig(min_chunk=200))

    assert chunker._enforce_min_max(["tiny"]) == ["tiny"]


def test_enforce_min_max_resplits_oversize():
    chunker = SemanticChunker(ChunkingConfig(min_chunk=10, max_chunk=500))
    big = " ".join(["word"] * 400)

    result = chunker._enforce_min_max([big])

    assert len(result) > 1
    assert all(len(chunk) <= 500 for chunk in result)


def test_enforce_min_max_leaves_fitting_chunks_alone():
    chunker = SemanticChunker(ChunkingConfig(min_chunk=10, max_chunk=500))
    chunks = ["x" * 100, "y" * 500]

    assert chunker._enforce_min_max(chunks) == chunks


@pytest.mark.asyncio
async def test_small_parent_is_its_own_child(embeddings):
    text = "Osmosis moves water across a membrane. It follows the concentration gradient."

    result = await split_with_children(text, embeddings)

    assert len(result.parents) == 1
    assert len(result.children) == 1
    child = result.children[0]
    assert child.content == result.parents[0].content
    assert child.metadata == {
        "chunk_index": 0,
        "parent_index": 0,
        "child_index": 0,
        "total_children": 1,
    }


@pytest.mark.asyncio
async def test_large_parent_split_into_children(embeddings):
    sentence = " ".join(["lorem"] * 59) + "."
    text = f"{sentence} {sentence}"

    result = await split_with_children(text, embeddings)

    assert len(result.parents) == 1
    children = result.children
    assert len(children) >= 2
    assert all(len(c.content) <= 512 for c in children)
    assert [c.metadata["chunk_index"] for c in children] == list(range(len(children)))
    assert [c.metadata["child_index"] for c in children] == list(range(len(children)))
    assert all(c.metadata["parent_index"] == 0 for c in children)
    assert all(c.metadata["total_children"] == len(children) for c in children)


@pytest.mark.asyncio
async def test_children_indices_sequential_across_parents(embeddings):
    text = "# One\nShort first section.\n# Two\nShort second section."

    result = await split_with_children(text, embeddings)

    assert [p.content for p in result.parents] == [
        "# One", "Short first section.", "# Two", "Short second section.",
    ]
    assert [c.metadata["chunk_index"] for c in result.children] == [0, 1, 2, 3]
    assert [c.metadata["parent_index"] for c in result.children] == [0, 1, 2, 3]
