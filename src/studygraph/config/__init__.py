"""Configuration management for studygraph."""
from .settings import (
    StudyGraphConfig,
    StorageConfig,
    ChunkingConfig,
    RetrievalConfig,
    GraphConfig,
    EmbeddingsConfig,
    LLMConfig,
    LoggingConfig,
    load_config,
)

__all__ = [
    "StudyGraphConfig",
    "StorageConfig",
    "ChunkingConfig",
    "RetrievalConfig",
    "GraphConfig",
    "EmbeddingsConfig",
    "LLMConfig",
    "LoggingConfig",
    "load_config",
]
