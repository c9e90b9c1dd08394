"""Turns remaining attachments into provider content parts.

Runs last. Text attachments become text parts; images, audio and other
files become base64 data parts. An attachment without data is replaced
by a text label and counted as an error.
"""

from __future__ import annotations

import logging
from typing import Any

from threadloom.models.node import Attachment
from threadloom.pipeline.base import ContextProcessor, PipelineContext

logger = logging.getLogger(__name__)

PROCESSOR_ID = "asset-resolver"
STATS_KEY = "asset_resolver_stats"


def attachment_part(attachment: Attachment) -> dict[str, Any]:
    """Build the content part for one attachment.

    Raises:
        ValueError: If the attachment carries no data.
    """
    if not attachment.data:
        raise ValueError(f"attachment {attachment.name!r} has no data")
    kind = attachment.kind
    if kind == "text":
        return {"type": "text", "text": f"[{attachment.name}]\n{attachment.data}"}
    data_url = f"data:{attachment.mime_type};base64,{attachment.data}"
    if kind == "image":
        return {"type": "image_url", "image_url": {"url": data_url}}
    if kind == "audio":
        return {
            "type": "input_audio",
            "input_audio": {
                "data": attachment.data,
                "format": attachment.mime_type.split("/", 1)[-1],
            },
        }
    return {"type": "file", "file": {"filename": attachment.name, "file_data": data_url}}


def resolve_assets(context: PipelineContext) -> None:
    resolved = 0
    failed = 0
    for message in context.messages:
        if not message.attachments:
            continue
        parts: list[dict[str, Any]] = []
        if isinstance(message.content, str):
            if message.content:
                parts.append({"type": "text", "text": message.content})
        else:
            parts.extend(message.content)
        for attachment in message.attachments:
            try:
                parts.append(attachment_part(attachment))
                resolved += 1
            except ValueError as exc:
                failed += 1
                logger.warning("Could not resolve attachment: %s", exc)
                parts.append({"type": "text", "text": f"[Attachment unavailable: {attachment.name}]"})
        message.content = parts
        message.attachments = []

    context.shared_data[STATS_KEY] = {"resolved": resolved, "failed": failed}
    if failed:
        context.log(PROCESSOR_ID, "warn", f"{failed} attachments could not be resolved")


asset_resolver = ContextProcessor(
    id=PROCESSOR_ID,
    name="Asset resolver",
    priority=10000,
    execute=resolve_assets,
)
