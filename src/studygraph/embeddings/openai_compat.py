"""OpenAI-compatible embeddings client.

Works against any /v1/embeddings endpoint (OpenAI, vLLM, local embedding
services).
"""
from __future__ import annotations
import httpx


class OpenAICompatibleEmbeddings:
    """Embedding gateway for OpenAI-compatible APIs."""

    def __init__(
        self,
        model: str,
        base_url: str,
        api_key: str = "",
        batch_size: int = 64,
        timeout: float = 120.0,
    ):
        self.model = model
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.batch_size = batch_size
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        # Only add Authorization if api_key is provided
        if self.api_key:
            return {"Authorization": f"Bearer {self.api_key}"}
        return {}

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings, ``batch_size`` texts per request.

        Raises:
            RuntimeError: If an API request fails
        """
        if not texts:
            return []

        all_embeddings: list[list[float]] = []

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for i in range(0, len(texts), self.batch_size):
                batch = texts[i:i + self.batch_size]

                try:
                    response = await client.post(
                        f"{self.base_url}/v1/embeddings",
                        headers=self._headers(),
                        json={"model": self.model, "input": batch},
                    )
                    response.raise_for_status()
                    data = response.json()
                except httpx.HTTPError as e:
                    raise RuntimeError(f"OpenAI-compatible embedding failed: {e}") from e

                # The API may return items out of order; "index" restores it
                items = sorted(data["data"], key=lambda item: item.get("index", 0))
                all_embeddings.extend(item["embedding"] for item in items)

        return all_embeddings

    async def embed_query(self, text: str) -> list[float]:
        """Generate the embedding for a single query string."""
        vectors = await self.embed_documents([text])
        return vectors[0]
