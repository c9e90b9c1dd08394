"""Protocols for Threadloom's external collaborators.

Defines the boundaries the core consumes but does not own: token
counting, session persistence, model invocation, agent lookup and
worldbook entries. Also defines the frozen dataclasses that cross those
boundaries (ModelRequest, StreamChunk, TokenUsage, WorldbookEntry).
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Optional, Protocol, runtime_checkable

if TYPE_CHECKING:
    from threadloom.models.config import AgentConfig
    from threadloom.models.session import ChatSession


@dataclass(frozen=True)
class TokenUsage:
    """Token usage reported by a provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_openai(cls, usage: dict[str, Any]) -> TokenUsage:
        prompt = int(usage.get("prompt_tokens") or 0)
        completion = int(usage.get("completion_tokens") or 0)
        return cls(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=int(usage.get("total_tokens") or prompt + completion),
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(frozen=True)
class ModelRequest:
    """A model-ready request assembled by the context pipeline."""

    messages: list[dict[str, Any]]
    model_id: Optional[str] = None
    profile_id: Optional[str] = None
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StreamChunk:
    """One piece of streamed model output.

    Any field may be empty; ``usage`` usually arrives on the last chunk.
    """

    text: str = ""
    reasoning: str = ""
    usage: Optional[TokenUsage] = None
    model_id: Optional[str] = None


@dataclass(frozen=True)
class WorldbookEntry:
    """A ranked piece of world knowledge to inject into the context.

    Entries with a ``depth`` are inserted that many messages before the
    end of the history; entries without one go before the history.
    """

    content: str
    id: str = ""
    role: str = "system"
    depth: Optional[int] = None
    order: int = 100


@runtime_checkable
class TokenCounter(Protocol):
    """Protocol for token counting implementations."""

    def count_text(self, text: str) -> int:
        """Count tokens in a plain text string."""
        ...

    def count_messages(self, messages: list[dict]) -> int:
        """Count tokens in a message list, including per-message overhead."""
        ...


@runtime_checkable
class SessionPersister(Protocol):
    """Durable storage for sessions.

    ``persist`` is called after every committed mutation. Failures are
    reported by the caller but never roll back in-memory state.
    """

    def persist(self, session: ChatSession) -> None:
        ...

    def load(self, session_id: str) -> ChatSession:
        ...


@runtime_checkable
class ModelInvoker(Protocol):
    """Streams a model response for a request.

    Implementations must stop yielding once ``abort`` is set. They may
    raise to signal a terminal error.
    """

    def stream(
        self, request: ModelRequest, abort: asyncio.Event
    ) -> AsyncIterator[StreamChunk]:
        ...


@runtime_checkable
class AgentResolver(Protocol):
    """Supplies the agent configuration for a session."""

    def resolve(self, session: ChatSession) -> AgentConfig | None:
        ...


@runtime_checkable
class WorldbookProvider(Protocol):
    """Supplies worldbook entries relevant to the current context."""

    def entries_for(
        self, session: ChatSession, messages: list[dict[str, Any]]
    ) -> list[WorldbookEntry]:
        ...
