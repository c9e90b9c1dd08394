"""Loads the active branch into pipeline messages."""

from __future__ import annotations

from threadloom.models.node import META_COMPRESSED_NODE_IDS
from threadloom.pipeline.base import ContextProcessor, PipelineContext, PipelineMessage

PROCESSOR_ID = "session-loader"


def _hidden_by_compression(context: PipelineContext) -> set[str]:
    hidden: set[str] = set()
    for node in context.path:
        if node.is_compression_node and node.is_enabled:
            hidden.update(node.metadata.get(META_COMPRESSED_NODE_IDS) or [])
    return hidden


def load_session(context: PipelineContext) -> None:
    """Turn ``context.path`` into history messages.

    Skips the root, disabled nodes, nodes summarised by an enabled
    compression node, and empty messages without attachments.
    """
    root_id = context.session.root_node_id
    hidden = _hidden_by_compression(context)
    messages: list[PipelineMessage] = []
    skipped = 0
    for node in context.path:
        if node.id == root_id:
            continue
        if not node.is_enabled or node.id in hidden:
            skipped += 1
            continue
        if not node.content.strip() and not node.attachments:
            skipped += 1
            continue
        messages.append(PipelineMessage(
            role=node.role.value,
            content=node.content,
            source_id=node.id,
            attachments=list(node.attachments),
        ))
    context.messages = messages
    context.log(
        PROCESSOR_ID, "info",
        f"loaded {len(messages)} messages ({skipped} skipped)",
    )


session_loader = ContextProcessor(
    id=PROCESSOR_ID,
    name="Session loader",
    priority=100,
    execute=load_session,
    description="Loads the active branch, dropping disabled and hidden nodes.",
)
