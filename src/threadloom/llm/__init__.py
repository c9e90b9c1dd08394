"""Streaming model client for Threadloom."""

from threadloom.llm.client import OpenAICompatibleInvoker, parse_stream_event
from threadloom.llm.errors import (
    LLMAuthError,
    LLMClientError,
    LLMConfigError,
    LLMRateLimitError,
    LLMResponseError,
)

__all__ = [
    "OpenAICompatibleInvoker",
    "parse_stream_event",
    "LLMClientError",
    "LLMConfigError",
    "LLMRateLimitError",
    "LLMAuthError",
    "LLMResponseError",
]
