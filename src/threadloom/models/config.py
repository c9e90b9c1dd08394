"""Configuration models for Threadloom.

HistoryConfig tunes the undo/redo engine. AgentConfig carries everything
the context pipeline reads about the active agent: system prompt, preset
messages, injection strategies, regex rules and the token budget.
LLMConfig configures the built-in streaming model client.
"""

from __future__ import annotations

import os
import uuid
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from threadloom.models.node import Role

CHAT_HISTORY_ANCHOR = "chat_history"


class HistoryConfig(BaseModel):
    """Limits and snapshot cadence for the history stack."""

    max_length: int = 50
    snapshot_interval: int = 15  # delta entries between forced snapshots
    snapshot_complexity_threshold: int = 30  # touched nodes between snapshots


class ContextManagementConfig(BaseModel):
    """Token budget applied by the token limiter."""

    enabled: bool = False
    max_context_tokens: Optional[int] = None
    # When > 0, a message that does not fit is cut to this many leading
    # characters instead of being dropped.
    retained_characters: int = 0


class InjectionStrategy(BaseModel):
    """Where a preset message is placed relative to the chat history.

    ``depth`` counts messages from the end of the history (0 = after the
    newest). ``depth_config`` accepts comma separated points and
    ``start~interval`` loops, e.g. ``"3, 10~5"``. ``anchor_target`` names
    a preset anchor such as ``chat_history``.
    """

    depth: Optional[int] = None
    depth_config: Optional[str] = None
    anchor_target: Optional[str] = None
    anchor_position: Literal["before", "after"] = "after"
    order: int = 100

    @property
    def is_depth(self) -> bool:
        return self.depth is not None or bool(self.depth_config)


class PresetMessage(BaseModel):
    """A message defined by the agent rather than the conversation."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    role: Role = Role.SYSTEM
    content: str = ""
    name: Optional[str] = None
    is_enabled: bool = True
    anchor: Optional[str] = None  # set for placeholder entries
    injection: Optional[InjectionStrategy] = None
    model_patterns: list[str] = Field(default_factory=list)


class RegexRule(BaseModel):
    """A user-defined text substitution."""

    pattern: str
    replacement: str = ""
    flags: str = "gm"
    enabled: bool = True
    order: int = 0
    target_roles: list[Role] = Field(default_factory=list)  # empty = all
    # Inclusive (min, max) message depth, 0 = newest message.
    depth_range: Optional[tuple[Optional[int], Optional[int]]] = None


class RegexPreset(BaseModel):
    name: str
    enabled: bool = True
    priority: int = 100
    rules: list[RegexRule] = Field(default_factory=list)


class AgentConfig(BaseModel):
    """The active agent as seen by the context pipeline."""

    id: str = "default"
    name: str = "Assistant"
    model_id: Optional[str] = None
    profile_id: Optional[str] = None
    system_prompt: Optional[str] = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    preset_messages: list[PresetMessage] = Field(default_factory=list)
    regex_presets: list[RegexPreset] = Field(default_factory=list)
    context_management: ContextManagementConfig = Field(
        default_factory=ContextManagementConfig
    )


class LLMConfig(BaseModel):
    """Connection settings for the built-in OpenAI-compatible client."""

    base_url: Optional[str] = None
    api_key: Optional[str] = None
    model: str = "gpt-4o-mini"
    timeout: float = 120.0
    max_retries: int = 3

    def resolved_api_key(self) -> str:
        return self.api_key or os.environ.get("THREADLOOM_API_KEY", "")

    def resolved_base_url(self) -> str:
        return (
            self.base_url
            or os.environ.get("THREADLOOM_BASE_URL", "https://api.openai.com/v1")
        ).rstrip("/")


class ThreadloomConfig(BaseModel):
    """Top-level configuration."""

    model_config = {"arbitrary_types_allowed": True}

    db_path: str = ":memory:"
    tokenizer_encoding: str = "o200k_base"
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
