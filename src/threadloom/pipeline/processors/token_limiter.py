"""Keeps the request inside the agent's context token budget.

Non-history messages (system prompt, presets, injections) are always
kept and their tokens are charged against the budget first. History is
then kept newest-first until the next message no longer fits; that
message is truncated when ``retained_characters`` is set, and every
older message is dropped. The newest history message is always kept.
Attachments are charged along with the text that carries them.
"""

from __future__ import annotations

import logging

from threadloom.models.node import Attachment
from threadloom.pipeline.base import ContextProcessor, PipelineContext, PipelineMessage
from threadloom.protocols import TokenCounter

logger = logging.getLogger(__name__)

PROCESSOR_ID = "token-limiter"
STATS_KEY = "token_limiter_stats"
TRUNCATION_MARKER = "\n...(truncated)"

# A 1024x1024 image at high detail: 85 base + 4 tiles of 170.
IMAGE_TOKEN_ESTIMATE = 765


def attachment_tokens(counter: TokenCounter, attachment: Attachment) -> int:
    """Estimated request cost of one attachment.

    A transcription replaces the file in the request, so it is what gets
    counted. Images have no dimensions here and are charged a flat
    estimate; any other file is counted by the data the asset resolver
    will inline.
    """
    if attachment.transcription:
        return counter.count_text(attachment.transcription)
    if attachment.kind == "image":
        return IMAGE_TOKEN_ESTIMATE
    return counter.count_text(attachment.data or "")


def _tokens(counter: TokenCounter, message: PipelineMessage) -> int:
    return counter.count_text(message.text) + sum(
        attachment_tokens(counter, a) for a in message.attachments
    )


def _truncated(message: PipelineMessage, keep_chars: int) -> PipelineMessage:
    return PipelineMessage(
        role=message.role,
        content=message.text[:keep_chars] + TRUNCATION_MARKER,
        source_type=message.source_type,
        source_id=message.source_id,
        attachments=list(message.attachments),
        name=message.name,
    )


def limit_tokens(context: PipelineContext, counter: TokenCounter) -> None:
    config = context.agent.context_management
    if not config.enabled or not config.max_context_tokens:
        context.log(PROCESSOR_ID, "debug", "context limit disabled; skipped")
        return

    preset_tokens = sum(_tokens(counter, m) for m in context.messages if not m.is_history)
    budget = config.max_context_tokens - preset_tokens
    history_positions = [i for i, m in enumerate(context.messages) if m.is_history]

    replacements: dict[int, PipelineMessage] = {}
    kept: set[int] = set()
    used = 0
    truncated = 0
    for rank, position in enumerate(reversed(history_positions)):
        message = context.messages[position]
        cost = _tokens(counter, message)
        if used + cost <= budget or rank == 0:
            kept.add(position)
            used += cost
            continue
        if config.retained_characters > 0:
            cut = _truncated(message, config.retained_characters)
            cut_cost = _tokens(counter, cut)
            if used + cut_cost <= budget:
                kept.add(position)
                replacements[position] = cut
                used += cut_cost
                truncated += 1
        break

    history_set = set(history_positions)
    context.messages = [
        replacements.get(i, m)
        for i, m in enumerate(context.messages)
        if i not in history_set or i in kept
    ]
    dropped = len(history_positions) - len(kept)
    context.shared_data[STATS_KEY] = {
        "budget": config.max_context_tokens,
        "preset_tokens": preset_tokens,
        "history_tokens": used,
        "original_history_count": len(history_positions),
        "kept_history_count": len(kept),
        "dropped_count": dropped,
        "truncated_count": truncated,
    }
    if used > budget:
        logger.warning(
            "Newest message alone exceeds the context budget (%d > %d)", used, budget
        )
    context.log(
        PROCESSOR_ID, "info",
        f"kept {len(kept)}/{len(history_positions)} history messages "
        f"({used + preset_tokens}/{config.max_context_tokens} tokens)",
    )


def make_token_limiter(counter: TokenCounter) -> ContextProcessor:
    """Build the token limiter bound to *counter*."""
    return ContextProcessor(
        id=PROCESSOR_ID,
        name="Token limiter",
        priority=450,
        execute=lambda context: limit_tokens(context, counter),
    )
