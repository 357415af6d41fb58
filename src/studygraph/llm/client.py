"""Chat model client and response parsing.

The graph builder talks to any object implementing ``LLMGateway``. ``ChatClient``
is the bundled implementation for Ollama and OpenAI-compatible servers.

Usage:
    from studygraph.llm import ChatClient, parse_json_object

    llm = ChatClient(provider="ollama", model="qwen3-coder:30b")
    response = await llm.invoke([{"role": "user", "content": "..."}])
    data = parse_json_object(response)
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Literal, Protocol, runtime_checkable

import httpx

logger = logging.getLogger(__name__)

Provider = Literal["ollama", "openai"]


@runtime_checkable
class LLMGateway(Protocol):
    """Anything that answers a list of chat messages."""

    async def invoke(self, messages: list[dict[str, str]]) -> Any:
        ...


class ChatClient:
    """LLMGateway over HTTP.

    Errors are raised, never retried; retry policy belongs to the caller.
    """

    def __init__(
        self,
        provider: Provider = "ollama",
        model: str = "qwen3-coder:30b",
        base_url: str = "http://localhost:11434",
        api_key: str = "",
        temperature: float = 0.3,
        max_tokens: int = 4000,
        timeout: float = 180.0,
    ):
        if provider not in ("ollama", "openai"):
            raise ValueError(f"Invalid LLM provider: {provider}. Must be 'ollama' or 'openai'")
        self.provider = provider
        self.model = model
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout

    @classmethod
    def from_config(cls, config) -> ChatClient:
        """Build a client from an ``LLMConfig``."""
        return cls(
            provider=config.provider,
            model=config.model,
            base_url=config.base_url,
            api_key=config.api_key,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            timeout=config.timeout,
        )

    async def invoke(self, messages: list[dict[str, str]]) -> str:
        """Send chat messages and return the reply text.

        Raises:
            RuntimeError: If the request fails
        """
        logger.debug(f"Calling {self.provider}/{self.model} with {len(messages)} messages")

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                if self.provider == "ollama":
                    response = await client.post(
                        f"{self.base_url}/api/chat",
                        json={
                            "model": self.model,
                            "messages": messages,
                            "stream": False,
                            "options": {
                                "temperature": self.temperature,
                                "num_predict": self.max_tokens,
                            },
                        },
                    )
                    response.raise_for_status()
                    return response.json().get("message", {}).get("content", "")

                # OpenAI-compatible chat completions API
                headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
                response = await client.post(
                    f"{self.base_url}/v1/chat/completions",
                    headers=headers,
                    json={
                        "model": self.model,
                        "messages": messages,
                        "max_tokens": self.max_tokens,
                        "temperature": self.temperature,
                    },
                )
                response.raise_for_status()
                choices = response.json().get("choices", [])
                if not choices:
                    return ""
                return choices[0].get("message", {}).get("content", "") or ""

        except httpx.HTTPError as e:
            raise RuntimeError(f"LLM call failed ({self.provider}/{self.model}): {e}") from e


def response_text(response: Any) -> str:
    """Extract plain text from an LLM response.

    Accepts a string, an object or dict with a ``content`` string, or a
    ``content`` list of parts (strings or dicts/objects with ``text``).
    """
    if response is None:
        return ""
    if isinstance(response, str):
        return response

    content = response.get("content") if isinstance(response, dict) else getattr(response, "content", None)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict):
                parts.append(str(part.get("text", "")))
            else:
                parts.append(str(getattr(part, "text", "")))
        return "".join(parts)
    return str(response)


def strip_fences(text: str) -> str:
    """Remove a leading/trailing markdown code fence."""
    return re.sub(r'^\s*```(?:json)?\s*|\s*```\s*$', '', text).strip()


def extract_json_object(text: str) -> str:
    """Return the first balanced ``{...}`` span in text, or an empty string.

    Braces inside JSON strings are skipped.
    """
    depth = 0
    start = -1
    in_string = False
    escaped = False

    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == '\\':
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"' and depth > 0:
            in_string = True
        elif ch == '{':
            if depth == 0:
                start = i
            depth += 1
        elif ch == '}' and depth > 0:
            depth -= 1
            if depth == 0:
                return text[start:i + 1]

    return ""


def parse_json_object(response: Any) -> dict[str, Any] | None:
    """Parse the first well-formed JSON object out of an LLM response.

    Tolerates surrounding prose and code fences.

    Returns:
        Parsed dict, or None if nothing parseable was found
    """
    raw = strip_fences(response_text(response))
    candidate = extract_json_object(raw) or raw

    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        return None

    return parsed if isinstance(parsed, dict) else None
