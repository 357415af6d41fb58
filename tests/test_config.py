"""Tests for configuration loading and validation."""
from pathlib import Path

import pytest

from studygraph.config import ChunkingConfig, StorageConfig, StudyGraphConfig, load_config, settings
from studygraph.exceptions import ConfigError

EXAMPLE_CONFIG = Path(__file__).resolve().parent.parent / "config" / "studygraph.example.yaml"


def test_defaults():
    config = StudyGraphConfig()

    assert config.storage.backend == "json"
    assert config.chunking.min_chunk == 200
    assert config.chunking.max_chunk == 2048
    assert config.chunking.buffer_size == 3
    assert config.chunking.breakpoint_percentile == 25
    assert config.chunking.child_chunk_size == 512
    assert config.chunking.child_chunk_overlap == 64
    assert config.retrieval.parent_retrieval is True
    assert config.retrieval.rrf_c == 60
    assert config.graph.batch_size == 10
    assert config.graph.min_nodes == 30


def test_from_yaml(tmp_path):
    path = tmp_path / "studygraph.yaml"
    path.write_text(
        "storage:\n"
        "  root: /data/studygraph\n"
        "chunking:\n"
        "  min_chunk: 100\n"
        "retrieval:\n"
        "  parent_retrieval: false\n"
        "llm:\n"
        "  provider: openai\n"
        "  base_url: http://vllm:8000\n",
        encoding="utf-8",
    )

    config = StudyGraphConfig.from_yaml(path)

    assert config.storage.root == "/data/studygraph"
    assert config.chunking.min_chunk == 100
    assert config.retrieval.parent_retrieval is False
    assert config.llm.provider == "openai"


def test_example_config_is_valid():
    config = StudyGraphConfig.from_yaml(EXAMPLE_CONFIG)

    assert config.embeddings.model == "snowflake-arctic-embed2:latest"


def test_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        StudyGraphConfig.from_yaml(tmp_path / "nope.yaml")


def test_invalid_values(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("chunking:\n  breakpoint_percentile: 150\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Invalid configuration"):
        StudyGraphConfig.from_yaml(path)


def test_non_mapping_file(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="mapping"):
        StudyGraphConfig.from_yaml(path)


def test_chunk_bounds_validated():
    with pytest.raises(ValueError):
        ChunkingConfig(min_chunk=3000, max_chunk=2048)
    with pytest.raises(ValueError):
        ChunkingConfig(child_chunk_size=64, child_chunk_overlap=64)


def test_pgvector_requires_dsn():
    with pytest.raises(ValueError):
        StorageConfig(backend="pgvector")
    with pytest.raises(ValueError):
        StorageConfig(backend="pgvector", dsn="mysql://localhost/db")

    config = StorageConfig(backend="pgvector", dsn="postgresql://localhost/studygraph")
    assert config.dsn == "postgresql://localhost/studygraph"


def test_env_secrets_override(tmp_path, monkeypatch):
    path = tmp_path / "studygraph.yaml"
    path.write_text("storage:\n  backend: pgvector\n", encoding="utf-8")
    monkeypatch.setenv("STUDYGRAPH_DATABASE_URL", "postgresql://user:pw@db:5432/sg")
    monkeypatch.setenv("STUDYGRAPH_LLM_API_KEY", "llm-secret")

    config = StudyGraphConfig.from_yaml(path)

    assert config.storage.dsn == "postgresql://user:pw@db:5432/sg"
    assert config.llm.api_key == "llm-secret"


def test_load_config_from_env_var(tmp_path, monkeypatch):
    path = tmp_path / "custom.yaml"
    path.write_text("graph:\n  batch_size: 4\n", encoding="utf-8")
    monkeypatch.setenv("STUDYGRAPH_CONFIG", str(path))

    assert load_config().graph.batch_size == 4
    assert load_config(path).graph.batch_size == 4


def test_log_redacted():
    config = StudyGraphConfig.model_validate({
        "storage": {"backend": "pgvector", "dsn": "postgresql://user:pw@db:5432/sg"},
        "embeddings": {"api_key": "emb-secret"},
    })

    redacted = config.log_redacted()

    assert redacted["storage"]["dsn"] == "postgresql://user:***@db:5432/sg"
    assert redacted["embeddings"]["api_key"] == "***"
    assert redacted["llm"]["api_key"] == ""


def test_env_secrets_fill_empty_yaml_section(tmp_path, monkeypatch):
    path = tmp_path / "studygraph.yaml"
    path.write_text("storage:\nllm:\n", encoding="utf-8")
    monkeypatch.setenv("STUDYGRAPH_DATABASE_URL", "postgresql://db/sg")
    monkeypatch.setenv("STUDYGRAPH_LLM_API_KEY", "llm-secret")

    config = StudyGraphConfig.from_yaml(path)

    assert config.storage.dsn == "postgresql://db/sg"
    assert config.llm.api_key == "llm-secret"


def test_invalid_env_without_file(tmp_path, monkeypatch):
    monkeypatch.delenv("STUDYGRAPH_CONFIG", raising=False)
    monkeypatch.setattr(settings, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")
    monkeypatch.setenv("STUDYGRAPH_DATABASE_URL", "mysql://localhost/db")

    with pytest.raises(ConfigError, match="Invalid configuration"):
        load_config()
