"""Normalises message roles and order for the provider.

Sub-steps run in order, each switchable through FormatterOptions:
merge system messages to the head, merge consecutive same-role messages,
convert system messages to user, and ensure user/assistant alternation.
"""

from __future__ import annotations

from pydantic import BaseModel

from threadloom.pipeline.base import (
    SOURCE_MERGED,
    SOURCE_PLACEHOLDER,
    ContextProcessor,
    MessageContent,
    PipelineContext,
    PipelineMessage,
)

PROCESSOR_ID = "message-formatter"


class FormatterOptions(BaseModel):
    merge_system_to_head: bool = True
    merge_consecutive_roles: bool = True
    merge_separator: str = "\n\n---\n\n"
    convert_system_to_user: bool = False
    ensure_alternating_roles: bool = False
    user_placeholder: str = "Continue"
    assistant_placeholder: str = "OK"


def _as_parts(content: MessageContent) -> list[dict]:
    if isinstance(content, str):
        return [{"type": "text", "text": content}] if content else []
    return list(content)


def join_content(a: MessageContent, b: MessageContent, separator: str) -> MessageContent:
    if isinstance(a, str) and isinstance(b, str):
        if not a:
            return b
        if not b:
            return a
        return f"{a}{separator}{b}"
    return [*_as_parts(a), {"type": "text", "text": separator}, *_as_parts(b)]


def _merged(first: PipelineMessage, second: PipelineMessage, separator: str) -> PipelineMessage:
    return PipelineMessage(
        role=first.role,
        content=join_content(first.content, second.content, separator),
        source_type=SOURCE_MERGED if first.source_type != second.source_type else first.source_type,
        source_id=first.source_id,
        attachments=[*first.attachments, *second.attachments],
    )


def merge_system_to_head(messages: list[PipelineMessage]) -> list[PipelineMessage]:
    systems = [m for m in messages if m.role == "system"]
    if not systems:
        return messages
    head = systems[0]
    for other in systems[1:]:
        head = _merged(head, other, "\n\n")
    return [head, *(m for m in messages if m.role != "system")]


def merge_consecutive_roles(
    messages: list[PipelineMessage], separator: str
) -> list[PipelineMessage]:
    result: list[PipelineMessage] = []
    for message in messages:
        if result and result[-1].role == message.role:
            result[-1] = _merged(result[-1], message, separator)
        else:
            result.append(message)
    return result


def convert_system_to_user(messages: list[PipelineMessage]) -> list[PipelineMessage]:
    for message in messages:
        if message.role == "system":
            message.role = "user"
    return messages


def ensure_alternating_roles(
    messages: list[PipelineMessage], options: FormatterOptions
) -> list[PipelineMessage]:
    """Insert placeholder turns so user and assistant strictly alternate.

    Leading system messages are left alone; the first conversational turn
    must come from the user.
    """
    result: list[PipelineMessage] = []
    previous: str | None = None
    for message in messages:
        if message.role == "system":
            result.append(message)
            continue
        if previous is None and message.role == "assistant":
            result.append(PipelineMessage(
                role="user", content=options.user_placeholder,
                source_type=SOURCE_PLACEHOLDER,
            ))
        elif previous == message.role:
            filler_role = "assistant" if message.role == "user" else "user"
            filler = (
                options.assistant_placeholder if filler_role == "assistant"
                else options.user_placeholder
            )
            result.append(PipelineMessage(
                role=filler_role, content=filler, source_type=SOURCE_PLACEHOLDER,
            ))
        result.append(message)
        previous = message.role
    return result


def format_messages(context: PipelineContext, options: FormatterOptions) -> None:
    messages = context.messages
    if options.merge_system_to_head:
        messages = merge_system_to_head(messages)
    if options.merge_consecutive_roles:
        messages = merge_consecutive_roles(messages, options.merge_separator)
    if options.convert_system_to_user:
        messages = convert_system_to_user(messages)
    if options.ensure_alternating_roles:
        messages = ensure_alternating_roles(messages, options)
    context.messages = messages


def make_message_formatter(options: FormatterOptions | None = None) -> ContextProcessor:
    opts = options or FormatterOptions()
    return ContextProcessor(
        id=PROCESSOR_ID,
        name="Message formatter",
        priority=500,
        execute=lambda context: format_messages(context, opts),
    )
