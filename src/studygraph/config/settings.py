"""Configuration loading and validation.

Loads YAML configuration for studygraph with full validation. Secrets can be
supplied through STUDYGRAPH_* environment variables instead of the file.
"""
from __future__ import annotations
import os
import yaml
from pathlib import Path
from typing import Literal
from pydantic import BaseModel, Field, field_validator, model_validator

from studygraph.exceptions import ConfigError

DEFAULT_CONFIG_PATH = Path("config/studygraph.yaml")


class StorageConfig(BaseModel):
    """Where chunks, parents and graphs live."""
    root: str = Field("storage", description="Root directory for flat-file storage")
    backend: Literal["json", "pgvector"] = Field("json", description="Chunk storage backend")
    dsn: str | None = Field(None, description="PostgreSQL URL (pgvector backend only)")
    schema_name: str = Field("studygraph", description="Schema for pgvector tables")
    pool_size: int = Field(5, ge=1, le=50, description="Max pgvector pool connections")

    @field_validator("dsn")
    @classmethod
    def validate_dsn(cls, v: str | None) -> str | None:
        """Validate database URL format."""
        if v is not None and not v.startswith(("postgresql://", "postgres://")):
            raise ValueError("dsn must start with 'postgresql://'")
        return v

    def model_post_init(self, __context) -> None:
        """Validate backend-specific configuration."""
        if self.backend == "pgvector" and not self.dsn:
            raise ValueError("storage.dsn required when backend=pgvector")


class ChunkingConfig(BaseModel):
    """Configuration for the semantic chunking algorithm.

    Sizes are in characters. ``min_chunk``/``max_chunk`` bound parent chunks,
    ``child_chunk_size`` bounds the small chunks that get indexed.
    """
    min_chunk: int = Field(200, ge=1, description="Merge chunks shorter than this")
    max_chunk: int = Field(2048, ge=1, description="Re-split chunks longer than this")
    buffer_size: int = Field(3, ge=1, description="Sentences per similarity window")
    breakpoint_percentile: float = Field(25, description="Similarity percentile used as threshold")
    embed_batch_size: int = Field(512, ge=1, le=512, description="Texts per embedding call")
    min_sentences: int = Field(5, ge=2, description="Below this, use the fixed-size splitter")
    fallback_chunk_size: int = Field(1024, ge=1)
    fallback_chunk_overlap: int = Field(128, ge=0)
    oversize_chunk_overlap: int = Field(64, ge=0)
    child_chunk_size: int = Field(512, ge=1)
    child_chunk_overlap: int = Field(64, ge=0)
    locale: str = Field("en", description="Locale code for sentence detection")

    @field_validator("breakpoint_percentile")
    @classmethod
    def validate_percentile(cls, v: float) -> float:
        if v < 0 or v > 100:
            raise ValueError("breakpoint_percentile must be between 0 and 100")
        return v

    @model_validator(mode="after")
    def validate_bounds(self) -> "ChunkingConfig":
        if self.min_chunk > self.max_chunk:
            raise ValueError("min_chunk must not exceed max_chunk")
        if self.fallback_chunk_overlap >= self.fallback_chunk_size:
            raise ValueError("fallback_chunk_overlap must be smaller than fallback_chunk_size")
        if self.child_chunk_overlap >= self.child_chunk_size:
            raise ValueError("child_chunk_overlap must be smaller than child_chunk_size")
        if self.oversize_chunk_overlap >= self.max_chunk:
            raise ValueError("oversize_chunk_overlap must be smaller than max_chunk")
        return self


class RetrievalConfig(BaseModel):
    """Hybrid retrieval configuration."""
    default_k: int = Field(8, ge=1, le=100)
    parent_retrieval: bool = Field(True, description="Resolve child hits to parent chunks")
    vector_weight: float = Field(0.5, ge=0.0, le=1.0)
    lexical_weight: float = Field(0.5, ge=0.0, le=1.0)
    rrf_c: int = Field(60, ge=1, description="Reciprocal rank fusion constant")


class GraphConfig(BaseModel):
    """Knowledge graph builder configuration."""
    batch_size: int = Field(10, ge=1, le=100, description="Chunks per extraction call")
    nodes_per_source: int = Field(15, ge=1)
    edges_per_source: int = Field(45, ge=1)
    min_nodes: int = Field(30, ge=1)
    min_edges: int = Field(90, ge=1)
    bridge_existing_limit: int = Field(100, ge=1)
    bridge_new_limit: int = Field(50, ge=1)


class EmbeddingsConfig(BaseModel):
    """Embedding provider configuration."""
    provider: Literal["ollama", "openai"] = Field("ollama", description="Embedding provider")
    model: str = Field("snowflake-arctic-embed2:latest", description="Model name")
    base_url: str = Field("http://localhost:11434", description="Provider API URL")
    api_key: str = Field("", description="API key (openai-compatible providers)")
    batch_size: int = Field(64, ge=1, le=512, description="Texts per HTTP request")
    timeout: float = Field(120.0, gt=0)


class LLMConfig(BaseModel):
    """Chat model configuration for graph extraction."""
    provider: Literal["ollama", "openai"] = Field("ollama", description="LLM provider")
    model: str = Field("qwen3-coder:30b", description="Model name")
    base_url: str = Field("http://localhost:11434", description="Provider API URL")
    api_key: str = Field("", description="API key (openai-compatible providers)")
    temperature: float = Field(0.3, ge=0.0, le=2.0)
    max_tokens: int = Field(4000, ge=1)
    timeout: float = Field(180.0, gt=0)


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field("INFO", description="Log level")
    format: str = Field("%(asctime)s - %(name)s - %(levelname)s - %(message)s")


class StudyGraphConfig(BaseModel):
    """Complete studygraph configuration."""
    storage: StorageConfig = Field(default_factory=StorageConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    graph: GraphConfig = Field(default_factory=GraphConfig)
    embeddings: EmbeddingsConfig = Field(default_factory=EmbeddingsConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, path: str | Path) -> StudyGraphConfig:
        """Load configuration from YAML file.

        Args:
            path: Path to YAML configuration file

        Returns:
            Validated StudyGraphConfig instance

        Raises:
            ConfigError: If the file is missing or the configuration is invalid
        """
        config_path = Path(path)

        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

        with open(config_path, 'r') as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ConfigError(f"Config file must contain a mapping: {config_path}")

        _apply_env_secrets(data)

        try:
            return cls.model_validate(data)
        except Exception as e:
            raise ConfigError(f"Invalid configuration in {config_path}: {e}") from e

    @classmethod
    def from_env(cls, env_var: str = "STUDYGRAPH_CONFIG") -> StudyGraphConfig:
        """Load configuration from the path in an environment variable.

        Falls back to config/studygraph.yaml, then to built-in defaults.
        """
        config_path = os.getenv(env_var)

        if config_path:
            return cls.from_yaml(config_path)
        if DEFAULT_CONFIG_PATH.exists():
            return cls.from_yaml(DEFAULT_CONFIG_PATH)

        data: dict = {}
        _apply_env_secrets(data)
        try:
            return cls.model_validate(data)
        except Exception as e:
            raise ConfigError(f"Invalid configuration from environment: {e}") from e

    def log_redacted(self) -> dict:
        """Get configuration dict with secrets redacted for logging."""
        config_dict = self.model_dump()

        dsn = config_dict["storage"].get("dsn")
        if dsn and "@" in dsn:
            creds, host = dsn.split("@", 1)
            if creds.count(":") >= 2:
                scheme_user = creds.rsplit(":", 1)[0]
                config_dict["storage"]["dsn"] = f"{scheme_user}:***@{host}"

        for section in ("embeddings", "llm"):
            if config_dict[section].get("api_key"):
                config_dict[section]["api_key"] = "***"

        return config_dict


def _apply_env_secrets(data: dict) -> None:
    """Overlay secrets from STUDYGRAPH_* environment variables."""
    overrides = {
        ("storage", "dsn"): os.getenv("STUDYGRAPH_DATABASE_URL"),
        ("embeddings", "api_key"): os.getenv("STUDYGRAPH_EMBEDDINGS_API_KEY"),
        ("llm", "api_key"): os.getenv("STUDYGRAPH_LLM_API_KEY"),
    }
    for (section, key), value in overrides.items():
        if not value:
            continue
        # an empty section in YAML loads as None
        current = data.get(section) or {}
        if isinstance(current, dict):
            current[key] = value
            data[section] = current


def load_config(config_path: str | Path | None = None) -> StudyGraphConfig:
    """Load configuration from an explicit file or the environment."""
    if config_path:
        return StudyGraphConfig.from_yaml(config_path)
    return StudyGraphConfig.from_env()
