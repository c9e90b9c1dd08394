"""Streaming OpenAI-compatible model invoker on httpx with tenacity retry.

Implements the ModelInvoker protocol: posts a chat completion with
``stream=true`` and yields StreamChunks parsed from the server-sent
event stream. Opening the stream is retried on transient errors; once
chunks have been yielded nothing is retried.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator

import httpx
import tenacity

from threadloom.llm.errors import (
    LLMAuthError,
    LLMConfigError,
    LLMRateLimitError,
    LLMResponseError,
)
from threadloom.models.config import LLMConfig
from threadloom.protocols import ModelRequest, StreamChunk, TokenUsage

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
_AUTH_ERROR_STATUS_CODES = {401, 403}


def _is_retryable(exc: BaseException) -> bool:
    """Check if an exception is retryable.

    Retryable: 429, 500, 502, 503, 504, connection errors.
    Not retryable: 401, 403, 400, other client errors.
    """
    if isinstance(exc, LLMAuthError):
        return False
    if isinstance(exc, LLMRateLimitError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in _RETRYABLE_STATUS_CODES
    return isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout))


def parse_stream_event(data: str) -> StreamChunk | None:
    """Parse one SSE ``data:`` payload into a StreamChunk.

    Returns None for events that carry nothing useful.

    Raises:
        LLMResponseError: If the payload is not valid JSON.
    """
    try:
        event = json.loads(data)
    except json.JSONDecodeError as exc:
        raise LLMResponseError(f"Malformed stream event: {data[:200]}") from exc

    text = ""
    reasoning = ""
    choices = event.get("choices") or []
    if choices:
        delta = choices[0].get("delta") or {}
        text = delta.get("content") or ""
        reasoning = delta.get("reasoning_content") or delta.get("reasoning") or ""
    usage = TokenUsage.from_openai(event["usage"]) if event.get("usage") else None
    if not (text or reasoning or usage):
        return None
    return StreamChunk(text=text, reasoning=reasoning, usage=usage, model_id=event.get("model"))


class OpenAICompatibleInvoker:
    """Async streaming client for OpenAI-compatible chat completions.

    Usage::

        async with OpenAICompatibleInvoker(LLMConfig(api_key="sk-...")) as llm:
            async for chunk in llm.stream(request, asyncio.Event()):
                print(chunk.text, end="")
    """

    def __init__(self, config: LLMConfig | None = None, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        """Initialize the client.

        Args:
            config: Connection settings. API key and base URL fall back to
                THREADLOOM_API_KEY / THREADLOOM_BASE_URL.
            transport: Optional httpx transport (e.g. ``httpx.MockTransport``).

        Raises:
            LLMConfigError: If no API key is provided or found in environment.
        """
        self._config = config or LLMConfig()
        api_key = self._config.resolved_api_key()
        if not api_key:
            raise LLMConfigError(
                "No API key provided. Set LLMConfig.api_key or the "
                "THREADLOOM_API_KEY environment variable."
            )
        self._base_url = self._config.resolved_base_url()
        self._client = httpx.AsyncClient(
            timeout=self._config.timeout,
            transport=transport,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {api_key}",
            },
        )

    def build_payload(self, request: ModelRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model_id or self._config.model,
            "messages": request.messages,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        payload.update(request.parameters)
        return payload

    async def _open_stream(self, payload: dict[str, Any]) -> httpx.Response:
        """Send the request and return the open streaming response (no retry)."""
        response = await self._client.send(
            self._client.build_request(
                "POST", f"{self._base_url}/chat/completions", json=payload
            ),
            stream=True,
        )
        if response.status_code < 400:
            return response

        await response.aread()
        await response.aclose()
        if response.status_code in _AUTH_ERROR_STATUS_CODES:
            raise LLMAuthError(
                f"Authentication failed: HTTP {response.status_code} - {response.text}"
            )
        if response.status_code == 429:
            retry_after: float | None = None
            raw = response.headers.get("Retry-After")
            if raw is not None:
                try:
                    retry_after = float(raw)
                except ValueError:
                    retry_after = None
            raise LLMRateLimitError(
                f"Rate limited: HTTP 429 - {response.text}", retry_after=retry_after
            )
        response.raise_for_status()
        return response

    async def stream(
        self, request: ModelRequest, abort: asyncio.Event
    ) -> AsyncIterator[StreamChunk]:
        """Stream a completion, stopping as soon as *abort* is set."""
        payload = self.build_payload(request)
        retryer = tenacity.AsyncRetrying(
            retry=tenacity.retry_if_exception(_is_retryable),
            wait=(
                tenacity.wait_exponential(multiplier=1, min=1, max=30)
                + tenacity.wait_random(0, 2)
            ),
            stop=tenacity.stop_after_attempt(self._config.max_retries),
            before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        response = await retryer(self._open_stream, payload)
        try:
            async for line in response.aiter_lines():
                if abort.is_set():
                    logger.debug("Stream aborted by caller")
                    break
                line = line.strip()
                if not line.startswith("data:"):
                    continue
                data = line[len("data:"):].strip()
                if data == "[DONE]":
                    break
                chunk = parse_stream_event(data)
                if chunk is not None:
                    yield chunk
        finally:
            await response.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> OpenAICompatibleInvoker:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()
