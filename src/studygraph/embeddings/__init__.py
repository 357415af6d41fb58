"""Embedding gateways.

Usage:
    from studygraph.embeddings import create_embeddings

    embeddings = create_embeddings(config.embeddings)
    vectors = await embeddings.embed_documents(["some text"])
"""
from __future__ import annotations

from studygraph.config import EmbeddingsConfig

from .gateway import EmbeddingGateway, embed_in_batches, MAX_EMBED_BATCH
from .ollama import OllamaEmbeddings
from .openai_compat import OpenAICompatibleEmbeddings


def create_embeddings(config: EmbeddingsConfig) -> EmbeddingGateway:
    """Create an embedding gateway from configuration.

    Raises:
        ValueError: If provider is not supported
    """
    if config.provider == "ollama":
        return OllamaEmbeddings(model=config.model, base_url=config.base_url, timeout=config.timeout)
    if config.provider == "openai":
        return OpenAICompatibleEmbeddings(
            model=config.model,
            base_url=config.base_url,
            api_key=config.api_key,
            batch_size=config.batch_size,
            timeout=config.timeout,
        )
    raise ValueError(f"Invalid embeddings provider: {config.provider}. Must be 'ollama' or 'openai'")


__all__ = [
    "EmbeddingGateway",
    "embed_in_batches",
    "MAX_EMBED_BATCH",
    "OllamaEmbeddings",
    "OpenAICompatibleEmbeddings",
    "create_embeddings",
]
