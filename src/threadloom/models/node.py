"""Message node models.

A session's tree is an arena: a flat ``nodes`` map keyed by id, with
explicit ``parent_id`` / ``children_ids`` back-references. Traversal is
always by id lookup.
"""

from __future__ import annotations

import enum
import secrets
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

# Well-known metadata keys.
META_MODEL_ID = "model_id"
META_PROFILE_ID = "profile_id"
META_USAGE = "usage"
META_IS_TRUNCATED = "is_truncated"
META_ERROR = "error"
META_IS_COMPRESSION_NODE = "is_compression_node"
META_COMPRESSED_NODE_IDS = "compressed_node_ids"
META_SUMMARIZED_FROM = "summarized_from"
META_CONTINUATION_PREFIX = "continuation_prefix"
META_IS_CONTINUATION = "is_continuation"
META_REASONING = "reasoning_content"
META_REQUEST_STARTED_AT = "request_started_at"
META_REQUEST_ENDED_AT = "request_ended_at"

GENERATION_INTERRUPTED = "generation interrupted"


class Role(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class NodeStatus(str, enum.Enum):
    GENERATING = "generating"
    COMPLETE = "complete"
    ERROR = "error"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_node_id() -> str:
    """Return a new node id of the form ``node-<ms>-<suffix>``."""
    return f"node-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class Attachment(BaseModel):
    """A file attached to a message.

    ``data`` holds base64 for binary payloads or plain text for text
    files. ``transcription`` is filled in by an external transcriber.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    name: str
    mime_type: str = "application/octet-stream"
    data: Optional[str] = None
    transcription: Optional[str] = None

    @property
    def kind(self) -> str:
        """Coarse media kind derived from the mime type."""
        major = self.mime_type.split("/", 1)[0]
        if major in ("image", "audio", "video", "text"):
            return major
        if self.mime_type in ("application/json", "application/xml"):
            return "text"
        return "document"


class MessageNode(BaseModel):
    """One message in the conversation tree."""

    id: str = Field(default_factory=generate_node_id)
    parent_id: Optional[str] = None
    children_ids: list[str] = Field(default_factory=list)
    content: str = ""
    role: Role = Role.USER
    status: NodeStatus = NodeStatus.COMPLETE
    is_enabled: bool = True
    timestamp: datetime = Field(default_factory=_utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)
    attachments: list[Attachment] = Field(default_factory=list)
    last_selected_child_id: Optional[str] = None

    @property
    def is_compression_node(self) -> bool:
        return bool(self.metadata.get(META_IS_COMPRESSION_NODE))
