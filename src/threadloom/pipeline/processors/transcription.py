"""Resolves attachment transcriptions into message text.

``[file::<attachment id>]`` placeholders are replaced by the attachment's
transcription, or by a short label when none exists. Transcribed
attachments that no placeholder claimed are appended to the message.
Transcribed attachments are removed from the message so the asset
resolver does not send them twice.
"""

from __future__ import annotations

import re

from threadloom.pipeline.base import ContextProcessor, PipelineContext

PROCESSOR_ID = "transcription"

_PLACEHOLDER = re.compile(r"\[file::([\w.\-]+)\]")


def attachment_label(index: int, name: str) -> str:
    return f"[Attachment: {index} - {name}]"


def resolve_transcriptions(context: PipelineContext) -> None:
    resolved = 0
    for message in context.messages:
        if not message.attachments or not isinstance(message.content, str):
            continue
        by_id = {a.id: (i, a) for i, a in enumerate(message.attachments, start=1)}
        claimed: set[str] = set()

        def substitute(match: re.Match[str]) -> str:
            found = by_id.get(match.group(1))
            if found is None:
                return match.group(0)
            index, attachment = found
            claimed.add(attachment.id)
            if attachment.transcription:
                return attachment.transcription
            return attachment_label(index, attachment.name)

        content = _PLACEHOLDER.sub(substitute, message.content)

        for index, attachment in by_id.values():
            if attachment.id in claimed or not attachment.transcription:
                continue
            block = f"{attachment_label(index, attachment.name)}\n{attachment.transcription}"
            content = f"{content}\n\n{block}" if content else block

        message.content = content
        kept = [a for a in message.attachments if not a.transcription]
        resolved += len(message.attachments) - len(kept)
        message.attachments = kept

    if resolved:
        context.log(PROCESSOR_ID, "info", f"inlined {resolved} transcriptions")


transcription = ContextProcessor(
    id=PROCESSOR_ID,
    name="Transcription resolver",
    priority=250,
    execute=resolve_transcriptions,
)
