"""LLM gateway and response parsing helpers."""
from .client import (
    LLMGateway,
    ChatClient,
    response_text,
    strip_fences,
    extract_json_object,
    parse_json_object,
)

__all__ = [
    "LLMGateway",
    "ChatClient",
    "response_text",
    "strip_fences",
    "extract_json_object",
    "parse_json_object",
]
