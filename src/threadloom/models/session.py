"""Chat session model."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from threadloom.models.history import HistoryEntry
from threadloom.models.node import MessageNode, Role


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChatSession(BaseModel):
    """A chat session: the node arena plus its active branch and history.

    ``nodes`` always contains the synthetic root. ``active_leaf_id`` must
    resolve to an existing node after every committed mutation.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str = "New chat"
    nodes: dict[str, MessageNode] = Field(default_factory=dict)
    root_node_id: str
    active_leaf_id: str
    current_agent_id: Optional[str] = None
    parameter_overrides: dict[str, Any] = Field(default_factory=dict)
    system_prompt_override: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    history: list[HistoryEntry] = Field(default_factory=list)
    history_index: int = 0

    @classmethod
    def create(
        cls,
        name: str = "New chat",
        *,
        agent_id: str | None = None,
    ) -> ChatSession:
        """Create a session holding only its synthetic root node.

        The root is an empty system node; it is both the root and the
        initial active leaf.
        """
        root = MessageNode(role=Role.SYSTEM, content="")
        return cls(
            name=name,
            nodes={root.id: root},
            root_node_id=root.id,
            active_leaf_id=root.id,
            current_agent_id=agent_id,
        )

    @property
    def root(self) -> MessageNode:
        return self.nodes[self.root_node_id]

    @property
    def active_leaf(self) -> MessageNode:
        return self.nodes[self.active_leaf_id]

    def touch(self) -> None:
        self.updated_at = _utcnow()
