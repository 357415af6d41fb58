"""
Semantic document chunker.

Turns raw text into topically coherent passages:
- Structural pre-split on headings, horizontal rules and code fences
- Sentence windows embedded and compared with cosine similarity
- Chunk boundaries where similarity drops below a percentile threshold
- Min/max size enforcement
- Optional second tier of small child chunks for precise vector matching
"""

import logging
import re
from functools import lru_cache
from typing import Callable, Optional

import numpy as np
from langchain_text_splitters import RecursiveCharacterTextSplitter
from nltk.tokenize import sent_tokenize
from nltk.tokenize.punkt import PunktSentenceTokenizer

from studygraph.config import ChunkingConfig
from studygraph.embeddings import EmbeddingGateway, embed_in_batches

from .models import Chunk, ChunkResult

logger = logging.getLogger(__name__)

HEADING_LINE = re.compile(r"^#{1,6}\s")
RULE_LINE = re.compile(r"^---+\s*$")
FENCE_LINE = re.compile(r"^```")

# Punkt models shipped with nltk, keyed by locale code
PUNKT_LANGUAGES = {
    "cs": "czech",
    "da": "danish",
    "de": "german",
    "el": "greek",
    "en": "english",
    "es": "spanish",
    "et": "estonian",
    "fi": "finnish",
    "fr": "french",
    "it": "italian",
    "nl": "dutch",
    "no": "norwegian",
    "pl": "polish",
    "pt": "portuguese",
    "ru": "russian",
    "sl": "slovene",
    "sv": "swedish",
    "tr": "turkish",
}


# ============ Pure helpers ============

def structural_segments(text: str) -> list[str]:
    """Split text at hard document boundaries.

    A heading line becomes a segment of its own. A horizontal rule closes the
    current segment and is dropped. A fenced code block is kept whole as one
    segment, and lines inside it are never treated as boundaries.
    """
    segments: list[str] = []
    buf: list[str] = []
    in_fence = False

    def flush() -> None:
        seg = "\n".join(buf).strip()
        if seg:
            segments.append(seg)
        buf.clear()

    for line in text.split("\n"):
        if in_fence:
            buf.append(line)
            if FENCE_LINE.match(line):
                in_fence = False
                flush()
            continue

        if FENCE_LINE.match(line):
            flush()
            buf.append(line)
            in_fence = True
        elif HEADING_LINE.match(line):
            flush()
            buf.append(line)
            flush()
        elif RULE_LINE.match(line):
            flush()
        else:
            buf.append(line)

    flush()
    return segments


@lru_cache(maxsize=None)
def _sentence_tokenizer(locale: str) -> Callable[[str], list[str]]:
    language = PUNKT_LANGUAGES.get(locale.split("-")[0].lower(), "english")
    try:
        sent_tokenize("Probe.", language=language)
    except LookupError:
        logger.warning(
            f"Punkt model for '{language}' not installed, using untrained sentence tokenizer"
        )
        return PunktSentenceTokenizer().tokenize

    def tokenize(text: str) -> list[str]:
        return sent_tokenize(text, language=language)

    return tokenize


def split_sentences(text: str, locale: str = "en") -> list[str]:
    """Split text into trimmed, non-empty sentences for the given locale."""
    tokenize = _sentence_tokenizer(locale)
    return [s.strip() for s in tokenize(text) if s.strip()]


def sliding_windows(sentences: list[str], size: int) -> list[list[str]]:
    """Return one window of up to ``size`` sentences centred on each sentence."""
    windows = []
    n = len(sentences)
    for i in range(n):
        start = max(0, i - size // 2)
        end = min(n, start + size)
        windows.append(sentences[start:end])
    return windows


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity, 0.0 when either vector has zero norm."""
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def percentile(values: list[float], p: float) -> float:
    """Nearest-rank percentile (no interpolation)."""
    ordered = sorted(values)
    idx = int((p / 100) * len(ordered))
    return ordered[min(idx, len(ordered) - 1)]


def fixed_size_split(text: str, chunk_size: int = 1024, chunk_overlap: int = 128) -> list[str]:
    """Recursive character split used where semantic scoring is unreliable."""
    splitter = RecursiveCharacterTextSplitter(
        chunk_size=chunk_size,
        chunk_overlap=chunk_overlap,
    )
    return splitter.split_text(text)


# ============ Chunker ============

class SemanticChunker:
    """Splits documents into semantically coherent chunks."""

    def __init__(self, config: Optional[ChunkingConfig] = None):
        self.config = config or ChunkingConfig()

    async def chunk(self, text: str, embeddings: EmbeddingGateway) -> list[Chunk]:
        """Chunk a document.

        Args:
            text: Raw document text
            embeddings: Gateway used to score sentence-window similarity

        Returns:
            Chunks tagged with chunk_index/total_chunks over the whole document
        """
        contents: list[str] = []

        for segment in structural_segments(text):
            contents.extend(await self._chunk_segment(segment, embeddings))

        contents = [c for c in contents if c.strip()]
        total = len(contents)
        logger.info(f"Created {total} chunks from {len(text)} chars")

        return [
            Chunk(content=content, metadata={"chunk_index": i, "total_chunks": total})
            for i, content in enumerate(contents)
        ]

    async def chunk_with_children(self, text: str, embeddings: EmbeddingGateway) -> ChunkResult:
        """Chunk a document into parents, then derive child sub-chunks.

        Children get a chunk_index sequential across all children plus
        parent_index, child_index and total_children.
        """
        parents = await self.chunk(text, embeddings)
        child_size = self.config.child_chunk_size
        children: list[Chunk] = []

        for parent in parents:
            parent_index = parent.metadata["chunk_index"]

            if len(parent.content) <= child_size:
                pieces = [parent.content]
            else:
                pieces = fixed_size_split(parent.content, child_size, self.config.child_chunk_overlap)

            for child_index, piece in enumerate(pieces):
                children.append(Chunk(
                    content=piece,
                    metadata={
                        "chunk_index": len(children),
                        "parent_index": parent_index,
                        "child_index": child_index,
                        "total_children": len(pieces),
                    },
                ))

        logger.info(f"Split {len(parents)} parents into {len(children)} children")
        return ChunkResult(parents=parents, children=children)

    async def _chunk_segment(self, text: str, embeddings: EmbeddingGateway) -> list[str]:
        """Semantically chunk one structural segment."""
        cfg = self.config
        sentences = split_sentences(text, cfg.locale)

        if len(sentences) < cfg.min_sentences:
            return self._fallback(text)

        windows = sliding_windows(sentences, cfg.buffer_size)
        vectors = await embed_in_batches(
            embeddings,
            [" ".join(w) for w in windows],
            cfg.embed_batch_size,
        )

        similarities = [
            cosine_similarity(vectors[i - 1], vectors[i])
            for i in range(1, len(vectors))
        ]
        if not similarities:
            return self._fallback(text)

        threshold = percentile(similarities, cfg.breakpoint_percentile)
        # Boundary after sentence i when the pair (i, i+1) is dissimilar
        breakpoints = {i + 1 for i, sim in enumerate(similarities) if sim < threshold}

        chunks: list[str] = []
        current: list[str] = []
        for i, sentence in enumerate(sentences):
            current.append(sentence)
            if (i + 1) in breakpoints or i == len(sentences) - 1:
                chunks.append(" ".join(current).strip())
                current = []

        logger.debug(f"Segment of {len(sentences)} sentences: {len(breakpoints)} breakpoints")
        return self._enforce_min_max(chunks)

    def _fallback(self, text: str) -> list[str]:
        return fixed_size_split(text, self.config.fallback_chunk_size, self.config.fallback_chunk_overlap)

    def _enforce_min_max(self, chunks: list[str]) -> list[str]:
        """Merge undersized chunks, then re-split oversized ones."""
        min_size = self.config.min_chunk
        max_size = self.config.max_chunk

        merged: list[str] = []
        buffer = ""
        for chunk in chunks:
            buffer = f"{buffer} {chunk}" if buffer else chunk
            if len(buffer) >= min_size:
                merged.append(buffer)
                buffer = ""

        if buffer:
            if merged:
                merged[-1] += " " + buffer
            else:
                merged.append(buffer)

        result: list[str] = []
        for chunk in merged:
            if len(chunk) <= max_size:
                result.append(chunk)
            else:
                result.extend(fixed_size_split(chunk, max_size, self.config.oversize_chunk_overlap))
        return result


async def semantic_chunk(
    text: str,
    embeddings: EmbeddingGateway,
    config: Optional[ChunkingConfig] = None,
) -> list[Chunk]:
    """Segment raw text into chunks. See ``SemanticChunker.chunk``."""
    return await SemanticChunker(config).chunk(text, embeddings)


async def split_with_children(
    text: str,
    embeddings: EmbeddingGateway,
    config: Optional[ChunkingConfig] = None,
) -> ChunkResult:
    """Two-tier split into parents and children. See ``SemanticChunker.chunk_with_children``."""
    return await SemanticChunker(config).chunk_with_children(text, embeddings)
