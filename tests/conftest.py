"""Shared test fixtures for Threadloom.

Provides sessions, a scripted model invoker, conversations wired with an
offline token counter, and an in-memory session store.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Callable, Sequence

import pytest

from threadloom import (
    ChatSession,
    CharTokenCounter,
    Conversation,
    MessageNode,
    ModelRequest,
    StreamChunk,
    TokenUsage,
)
from threadloom.operations import tree
from threadloom.storage import SessionStore


class ScriptedInvoker:
    """ModelInvoker that replays fixed chunks.

    Args:
        chunks: Text chunks to stream, in order.
        error: Raised after the chunks have been streamed.
        gate: When set, streaming pauses before chunk *pause_at* until the
            gate is released.
        pause_at: Index of the chunk to pause before.
        usage: Usage reported on a final chunk.
    """

    def __init__(
        self,
        chunks: Sequence[str] = ("Hello", " there"),
        *,
        error: Exception | None = None,
        gate: asyncio.Event | None = None,
        pause_at: int = 0,
        usage: TokenUsage | None = None,
        model_id: str | None = None,
    ) -> None:
        self.chunks = list(chunks)
        self.error = error
        self.gate = gate
        self.pause_at = pause_at
        self.usage = usage
        self.model_id = model_id
        self.requests: list[ModelRequest] = []

    async def stream(
        self, request: ModelRequest, abort: asyncio.Event
    ) -> AsyncIterator[StreamChunk]:
        self.requests.append(request)
        for i, text in enumerate(self.chunks):
            if self.gate is not None and i == self.pause_at:
                await self.gate.wait()
            if abort.is_set():
                return
            yield StreamChunk(text=text, model_id=self.model_id)
            await asyncio.sleep(0)
        if self.gate is not None and self.pause_at >= len(self.chunks):
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        if self.usage is not None and not abort.is_set():
            yield StreamChunk(usage=self.usage)


class RecordingPersister:
    """SessionPersister that keeps every persisted copy."""

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.saved: list[ChatSession] = []

    def persist(self, session: ChatSession) -> None:
        if self.fail:
            raise OSError("disk full")
        self.saved.append(session.model_copy(deep=True))

    def load(self, session_id: str) -> ChatSession:
        for session in reversed(self.saved):
            if session.id == session_id:
                return session.model_copy(deep=True)
        raise KeyError(session_id)


async def wait_until(predicate: Callable[[], bool], attempts: int = 500) -> None:
    """Yield to the event loop until *predicate* holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def build_chain(
    session: ChatSession, *turns: tuple[str, str], parent_id: str | None = None
) -> list[MessageNode]:
    """Append (role, content) turns as a single chain and activate its end."""
    parent = parent_id or session.active_leaf_id
    nodes = []
    for role, content in turns:
        node = tree.create_node(session, parent, content=content, role=role)
        nodes.append(node)
        parent = node.id
    if nodes:
        session.active_leaf_id = nodes[-1].id
        tree.update_selection_memory(session, nodes[-1].id)
    return nodes


@pytest.fixture
def session() -> ChatSession:
    return ChatSession.create("test")


@pytest.fixture
def invoker() -> ScriptedInvoker:
    return ScriptedInvoker()


@pytest.fixture
def persister() -> RecordingPersister:
    return RecordingPersister()


@pytest.fixture
def convo(invoker: ScriptedInvoker, persister: RecordingPersister) -> Conversation:
    return Conversation.create(
        "test",
        invoker=invoker,
        persister=persister,
        token_counter=CharTokenCounter(),
    )


@pytest.fixture
def store():
    """In-memory SessionStore."""
    s = SessionStore.open(":memory:")
    yield s
    s.close()
