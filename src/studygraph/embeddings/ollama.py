"""Ollama embeddings client.

Provides embedding generation via Ollama's /api/embeddings endpoint.
"""
from __future__ import annotations
import httpx
import logging

logger = logging.getLogger(__name__)


class OllamaEmbeddings:
    """Embedding gateway backed by a local Ollama server.

    Ollama embeds one prompt per request, so batches are walked sequentially.
    """

    def __init__(self, model: str, base_url: str = "http://localhost:11434", timeout: float = 120.0):
        self.model = model
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for a list of texts.

        Raises:
            RuntimeError: If an API request fails
        """
        if not texts:
            return []

        embeddings: list[list[float]] = []

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for idx, text in enumerate(texts):
                text_preview = text[:200] + "..." if len(text) > 200 else text
                logger.debug(f"Embedding text {idx+1}/{len(texts)}: length={len(text)}, preview={text_preview!r}")

                try:
                    response = await client.post(
                        f"{self.base_url}/api/embeddings",
                        json={"model": self.model, "prompt": text},
                    )
                    response.raise_for_status()
                    embeddings.append(response.json()["embedding"])
                except httpx.HTTPError as e:
                    error_msg = f"Ollama embedding failed for text {idx+1}/{len(texts)} (len={len(text)}): {e}"
                    logger.error(error_msg)
                    raise RuntimeError(error_msg) from e

        return embeddings

    async def embed_query(self, text: str) -> list[float]:
        """Generate the embedding for a single query string."""
        vectors = await self.embed_documents([text])
        return vectors[0]
