"""Tests for the threadloom.llm package.

Tests cover:
- parse_stream_event: content, reasoning, usage, empty and malformed events
- OpenAICompatibleInvoker: payload building, SSE streaming, abort, env config
- Retry classification and HTTP error mapping
- Error hierarchy
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from threadloom import LLMConfig, ModelRequest, ThreadloomError, TokenUsage
from threadloom.llm import (
    LLMAuthError,
    LLMClientError,
    LLMConfigError,
    LLMRateLimitError,
    LLMResponseError,
    OpenAICompatibleInvoker,
)
from threadloom.llm.client import _is_retryable, parse_stream_event


# ---------------------------------------------------------------------------
# Fixtures and helpers
# ---------------------------------------------------------------------------

def _sse(*events: dict, done: bool = True) -> bytes:
    """Encode events as a server-sent event body."""
    lines = [f"data: {json.dumps(e)}\n\n" for e in events]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def _delta(text: str, model: str = "gpt-4o-mini") -> dict:
    return {"model": model, "choices": [{"index": 0, "delta": {"content": text}}]}


def _make_invoker(handler, max_retries: int = 1, **kwargs) -> OpenAICompatibleInvoker:
    config = LLMConfig(
        api_key="test-key", base_url="http://test-api/v1", max_retries=max_retries, **kwargs,
    )
    return OpenAICompatibleInvoker(config, transport=httpx.MockTransport(handler))


async def _collect(invoker: OpenAICompatibleInvoker, request: ModelRequest | None = None):
    request = request or ModelRequest(messages=[{"role": "user", "content": "hi"}])
    return [c async for c in invoker.stream(request, asyncio.Event())]


# ---------------------------------------------------------------------------
# Stream event parsing
# ---------------------------------------------------------------------------


class TestParseStreamEvent:
    def test_content(self):
        chunk = parse_stream_event(json.dumps(_delta("Hel")))
        assert chunk.text == "Hel"
        assert chunk.model_id == "gpt-4o-mini"

    def test_reasoning(self):
        event = {"choices": [{"delta": {"reasoning_content": "thinking"}}]}
        assert parse_stream_event(json.dumps(event)).reasoning == "thinking"

    def test_usage_only(self):
        event = {"choices": [], "usage": {"prompt_tokens": 7, "completion_tokens": 3}}
        chunk = parse_stream_event(json.dumps(event))
        assert chunk.text == ""
        assert chunk.usage == TokenUsage(prompt_tokens=7, completion_tokens=3, total_tokens=10)

    def test_empty_event_skipped(self):
        event = {"choices": [{"delta": {"role": "assistant"}}]}
        assert parse_stream_event(json.dumps(event)) is None

    def test_malformed(self):
        with pytest.raises(LLMResponseError, match="Malformed stream event"):
            parse_stream_event("{not json")


# ---------------------------------------------------------------------------
# Invoker
# ---------------------------------------------------------------------------


class TestInvoker:
    def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv("THREADLOOM_API_KEY", raising=False)
        with pytest.raises(LLMConfigError, match="No API key"):
            OpenAICompatibleInvoker(LLMConfig())

    def test_env_config(self, monkeypatch):
        monkeypatch.setenv("THREADLOOM_API_KEY", "env-key")
        monkeypatch.setenv("THREADLOOM_BASE_URL", "http://env-api/v1/")
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, content=_sse(_delta("ok")))

        invoker = OpenAICompatibleInvoker(transport=httpx.MockTransport(handler))
        chunks = asyncio.run(_collect(invoker))
        assert [c.text for c in chunks] == ["ok"]
        assert str(seen[0].url) == "http://env-api/v1/chat/completions"
        assert seen[0].headers["Authorization"] == "Bearer env-key"

    def test_build_payload(self):
        invoker = _make_invoker(lambda r: httpx.Response(200), model="default-model")
        payload = invoker.build_payload(ModelRequest(
            messages=[{"role": "user", "content": "hi"}],
            parameters={"temperature": 0.2},
        ))
        assert payload["model"] == "default-model"
        assert payload["stream"] is True
        assert payload["stream_options"] == {"include_usage": True}
        assert payload["temperature"] == 0.2

        explicit = invoker.build_payload(ModelRequest(messages=[], model_id="other"))
        assert explicit["model"] == "other"

    @pytest.mark.asyncio
    async def test_streams_chunks_and_usage(self):
        body = _sse(
            _delta("Hello"),
            _delta(" world"),
            {"choices": [], "usage": {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7}},
        )
        sent: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            sent.append(json.loads(request.content))
            return httpx.Response(200, content=body)

        invoker = _make_invoker(handler)
        chunks = await _collect(invoker)
        await invoker.aclose()

        assert [c.text for c in chunks] == ["Hello", " world", ""]
        assert chunks[-1].usage.total_tokens == 7
        assert sent[0]["messages"] == [{"role": "user", "content": "hi"}]

    @pytest.mark.asyncio
    async def test_ignores_non_data_lines_and_stops_at_done(self):
        body = (
            b": keep-alive\n\n"
            + _sse(_delta("one"))
            + _sse(_delta("after done"), done=False)
        )
        invoker = _make_invoker(lambda r: httpx.Response(200, content=body))
        chunks = await _collect(invoker)
        assert [c.text for c in chunks] == ["one"]

    @pytest.mark.asyncio
    async def test_abort_stops_stream(self):
        body = _sse(_delta("a"), _delta("b"), _delta("c"))
        invoker = _make_invoker(lambda r: httpx.Response(200, content=body))
        abort = asyncio.Event()
        received = []
        request = ModelRequest(messages=[{"role": "user", "content": "hi"}])
        async for chunk in invoker.stream(request, abort):
            received.append(chunk.text)
            abort.set()
        assert received == ["a"]

    @pytest.mark.asyncio
    async def test_context_manager(self):
        async with _make_invoker(lambda r: httpx.Response(200, content=_sse())) as invoker:
            assert await _collect(invoker) == []


# ---------------------------------------------------------------------------
# HTTP errors and retry
# ---------------------------------------------------------------------------


class TestErrors:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_auth_error_not_retried(self, status):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(status, json={"error": "bad key"})

        invoker = _make_invoker(handler, max_retries=3)
        with pytest.raises(LLMAuthError, match=f"HTTP {status}"):
            await _collect(invoker)
        assert calls == 1

    @pytest.mark.asyncio
    async def test_rate_limit_retry_after(self):
        invoker = _make_invoker(
            lambda r: httpx.Response(429, headers={"Retry-After": "42"}, json={}),
        )
        with pytest.raises(LLMRateLimitError) as exc_info:
            await _collect(invoker)
        assert exc_info.value.retry_after == 42.0

    @pytest.mark.asyncio
    async def test_bad_request_raises(self):
        invoker = _make_invoker(lambda r: httpx.Response(400, json={"error": "bad"}), max_retries=3)
        with pytest.raises(httpx.HTTPStatusError):
            await _collect(invoker)

    @pytest.mark.asyncio
    async def test_retry_on_500_then_success(self):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls == 1:
                return httpx.Response(500, json={"error": "server error"})
            return httpx.Response(200, content=_sse(_delta("recovered")))

        invoker = _make_invoker(handler, max_retries=2)
        chunks = await _collect(invoker)
        assert calls == 2
        assert [c.text for c in chunks] == ["recovered"]

    def test_is_retryable(self):
        request = httpx.Request("POST", "http://test-api")

        def status_error(code: int) -> httpx.HTTPStatusError:
            return httpx.HTTPStatusError(
                "err", request=request, response=httpx.Response(code, request=request),
            )

        assert _is_retryable(LLMRateLimitError())
        assert _is_retryable(status_error(503))
        assert _is_retryable(httpx.ConnectError("refused"))
        assert not _is_retryable(LLMAuthError("nope"))
        assert not _is_retryable(status_error(400))
        assert not _is_retryable(ValueError("other"))


class TestErrorHierarchy:
    def test_all_are_threadloom_errors(self):
        for cls in (LLMConfigError, LLMRateLimitError, LLMAuthError, LLMResponseError):
            assert issubclass(cls, LLMClientError)
            assert issubclass(cls, ThreadloomError)

    def test_rate_limit_message(self):
        assert str(LLMRateLimitError("slow down", retry_after=3.0)) == "slow down (retry after 3.0s)"
        assert LLMRateLimitError().retry_after is None
