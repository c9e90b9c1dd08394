"""History entry and delta models for undo/redo.

Each entry describes the tree state *after* its action, either as a full
snapshot or as a list of deltas relative to the previous entry. Deltas
carry both old and new values so they can be inverted without consulting
any other state.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

from threadloom.models.node import MessageNode


class HistoryActionTag(str, enum.Enum):
    """What kind of user action produced a history entry."""

    INITIAL_STATE = "initial_state"
    NODE_EDIT = "node_edit"
    NODE_DATA_UPDATE = "node_data_update"
    NODES_DELETE = "nodes_delete"
    NODE_TOGGLE_ENABLED = "node_toggle_enabled"
    NODE_MOVE = "node_move"
    BRANCH_GRAFT = "branch_graft"
    BRANCH_CREATE = "branch_create"
    BRANCH_CREATE_FROM_EDIT = "branch_create_from_edit"
    ACTIVE_NODE_SWITCH = "active_node_switch"


class CreateDelta(BaseModel):
    type: Literal["create"] = "create"
    node: MessageNode


class DeleteDelta(BaseModel):
    type: Literal["delete"] = "delete"
    node: MessageNode


class UpdateDelta(BaseModel):
    type: Literal["update"] = "update"
    node_id: str
    previous: MessageNode
    final: MessageNode


class RelationChange(BaseModel):
    """Structural change of one node: its parent link and/or child order."""

    node_id: str
    old_parent_id: Optional[str] = None
    new_parent_id: Optional[str] = None
    old_children_ids: list[str] = Field(default_factory=list)
    new_children_ids: list[str] = Field(default_factory=list)


class RelationDelta(BaseModel):
    type: Literal["relation"] = "relation"
    changes: list[RelationChange]


class ActiveLeafDelta(BaseModel):
    type: Literal["active_leaf_change"] = "active_leaf_change"
    old_leaf_id: str
    new_leaf_id: str


HistoryDelta = Annotated[
    Union[CreateDelta, DeleteDelta, UpdateDelta, RelationDelta, ActiveLeafDelta],
    Field(discriminator="type"),
]


class HistoryContext(BaseModel):
    """Lightweight description of an entry, for display."""

    affected_count: int = 0
    target_node_id: Optional[str] = None
    description: Optional[str] = None


class TreeSnapshot(BaseModel):
    """Full copy of a session's node map and active leaf."""

    nodes: dict[str, MessageNode]
    active_leaf_id: str


class HistoryEntry(BaseModel):
    action_tag: HistoryActionTag
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    is_snapshot: bool = False
    snapshot: Optional[TreeSnapshot] = None
    deltas: list[HistoryDelta] = Field(default_factory=list)
    context: HistoryContext = Field(default_factory=HistoryContext)

    @property
    def affected_node_count(self) -> int:
        """Number of distinct nodes this entry's deltas touch."""
        ids: set[str] = set()
        for delta in self.deltas:
            if isinstance(delta, (CreateDelta, DeleteDelta)):
                ids.add(delta.node.id)
            elif isinstance(delta, UpdateDelta):
                ids.add(delta.node_id)
            elif isinstance(delta, RelationDelta):
                ids.update(c.node_id for c in delta.changes)
        return len(ids)
