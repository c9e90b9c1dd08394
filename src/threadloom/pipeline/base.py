"""Context pipeline building blocks.

A ContextProcessor is a named, prioritised function that mutates a shared
PipelineContext. Processors run in ascending priority; each one reads the
messages left by the previous ones.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Literal, Optional, Union

from threadloom.protocols import ModelRequest, WorldbookEntry

if TYPE_CHECKING:
    from threadloom.models.config import AgentConfig
    from threadloom.models.node import Attachment, MessageNode
    from threadloom.models.session import ChatSession

LogLevel = Literal["debug", "info", "warn", "error"]

# Content is plain text or a list of provider content parts.
MessageContent = Union[str, list[dict[str, Any]]]

SOURCE_SESSION_HISTORY = "session_history"
SOURCE_AGENT_PRESET = "agent_preset"
SOURCE_DEPTH_INJECTION = "depth_injection"
SOURCE_ANCHOR_INJECTION = "anchor_injection"
SOURCE_WORLDBOOK = "worldbook"
SOURCE_SYSTEM_PROMPT = "system_prompt"
SOURCE_PLACEHOLDER = "placeholder"
SOURCE_MERGED = "merged"


@dataclass
class PipelineMessage:
    """A message being assembled for the model request."""

    role: str
    content: MessageContent
    source_type: str = SOURCE_SESSION_HISTORY
    source_id: Optional[str] = None
    attachments: list[Attachment] = field(default_factory=list)
    name: Optional[str] = None

    @property
    def text(self) -> str:
        """Plain text of the message; text parts joined for list content."""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(
            p.get("text", "") for p in self.content if p.get("type") == "text"
        )

    @property
    def is_history(self) -> bool:
        return self.source_type == SOURCE_SESSION_HISTORY

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name:
            d["name"] = self.name
        return d


@dataclass(frozen=True)
class PipelineLog:
    processor_id: str
    level: LogLevel
    message: str


@dataclass
class PipelineContext:
    """Everything the pipeline reads and writes for one request.

    ``path`` is the active branch (root excluded) up to the message being
    answered. Processors append to ``logs`` and may stash intermediate
    results in ``shared_data``.
    """

    session: ChatSession
    path: list[MessageNode]
    agent: AgentConfig
    model_id: Optional[str] = None
    profile_id: Optional[str] = None
    parameters: dict[str, Any] = field(default_factory=dict)
    worldbook_entries: list[WorldbookEntry] = field(default_factory=list)
    messages: list[PipelineMessage] = field(default_factory=list)
    shared_data: dict[str, Any] = field(default_factory=dict)
    logs: list[PipelineLog] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)

    def log(self, processor_id: str, level: LogLevel, message: str) -> None:
        self.logs.append(PipelineLog(processor_id, level, message))

    def to_dicts(self) -> list[dict[str, Any]]:
        return [m.to_dict() for m in self.messages]

    def to_request(self) -> ModelRequest:
        return ModelRequest(
            messages=self.to_dicts(),
            model_id=self.model_id,
            profile_id=self.profile_id,
            parameters=dict(self.parameters),
        )


@dataclass(frozen=True)
class ContextProcessor:
    """One stage of the context pipeline."""

    id: str
    name: str
    priority: int
    execute: Callable[[PipelineContext], None]
    default_enabled: bool = True
    description: str = ""
