"""Shared pytest fixtures for all tests."""
import hashlib
import json
import os
import re

import pytest
import pytest_asyncio

from studygraph.config import StorageConfig, StudyGraphConfig
from studygraph.core import KnowledgeCore
from studygraph.knowledge_base.models import Chunk


class HashingEmbeddings:
    """Deterministic bag-of-words embeddings.

    Each lower-cased word is hashed into one of ``dims`` buckets, so texts
    sharing words have high cosine similarity.
    """

    def __init__(self, dims: int = 256):
        self.dims = dims
        self.document_calls: list[int] = []
        self.query_calls = 0

    def _vector(self, text: str) -> list[float]:
        vec = [0.0] * self.dims
        for word in re.findall(r"\w+", text.lower()):
            bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % self.dims
            vec[bucket] += 1.0
        return vec

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        self.document_calls.append(len(texts))
        return [self._vector(t) for t in texts]

    async def embed_query(self, text: str) -> list[float]:
        self.query_calls += 1
        return self._vector(text)


class TopicEmbeddings:
    """Two-dimensional embeddings counting topic keywords: [cat, rocket]."""

    def __init__(self):
        self.document_calls: list[int] = []

    @staticmethod
    def _vector(text: str) -> list[float]:
        words = re.findall(r"\w+", text.lower())
        return [float(words.count("cat")), float(words.count("rocket"))]

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        self.document_calls.append(len(texts))
        return [self._vector(t) for t in texts]

    async def embed_query(self, text: str) -> list[float]:
        return self._vector(text)


class ScriptedLLM:
    """LLM gateway replaying canned responses in order.

    A response may be a string, a dict (sent as JSON text) or an exception
    instance (raised). Once the script runs out, an empty extraction is
    returned. Every call's messages are recorded.
    """

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls: list[list[dict]] = []

    async def invoke(self, messages):
        self.calls.append(messages)
        if not self.responses:
            return '{"concepts": [], "relationships": []}'
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, dict):
            return json.dumps(response)
        return response


def make_chunk(content: str, **metadata) -> Chunk:
    return Chunk(content=content, metadata=metadata)


@pytest.fixture
def embeddings():
    return HashingEmbeddings()


@pytest.fixture
def topic_embeddings():
    return TopicEmbeddings()


@pytest.fixture
def config(tmp_path):
    return StudyGraphConfig(storage=StorageConfig(root=str(tmp_path / "storage")))


@pytest.fixture
def core(config):
    return KnowledgeCore.from_config(config)


@pytest.fixture(scope="session")
def database_url():
    """Get database URL from environment, if any."""
    return os.getenv("DATABASE_URL")


@pytest_asyncio.fixture
async def pg_dsn(database_url):
    """DATABASE_URL if it points at a reachable PostgreSQL, else skip."""
    if not database_url:
        pytest.skip("DATABASE_URL not set")

    import asyncpg

    try:
        conn = await asyncpg.connect(dsn=database_url, timeout=5)
    except (OSError, asyncpg.PostgresError) as e:
        pytest.skip(f"Database not reachable: {e}")
    await conn.close()
    return database_url
