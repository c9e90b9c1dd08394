"""Assembles agent presets, injections and worldbook entries around history.

Final layout::

    [system prompt]
    [skeleton presets before the chat_history anchor]
    [anchor injections before chat_history] [worldbook entries without depth]
    [history with depth injections]
    [anchor injections after chat_history]
    [skeleton presets after the anchor]

Preset messages without an injection strategy form the skeleton. Depth
injections are placed ``depth`` messages before the end of the history;
anchor injections sit next to a named skeleton placeholder.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from threadloom.models.config import CHAT_HISTORY_ANCHOR, InjectionStrategy, PresetMessage
from threadloom.pipeline.base import (
    SOURCE_AGENT_PRESET,
    SOURCE_ANCHOR_INJECTION,
    SOURCE_DEPTH_INJECTION,
    SOURCE_SYSTEM_PROMPT,
    SOURCE_WORLDBOOK,
    ContextProcessor,
    PipelineContext,
    PipelineMessage,
)

logger = logging.getLogger(__name__)

PROCESSOR_ID = "injection-assembler"

_LOOP = re.compile(r"^(\d+)\s*[~:]\s*(\d+)$")


@dataclass
class _Injection:
    message: PipelineMessage
    strategy: InjectionStrategy


def parse_depth_config(config: str, history_length: int) -> list[int]:
    """Expand a depth expression such as ``"3, 10~5"`` into depth points.

    ``S~I`` (or ``S:I``) yields S, S+I, ... up to *history_length*. Points
    deeper than the history are dropped.
    """
    depths: list[int] = []
    for segment in (s.strip() for s in config.split(",")):
        if not segment:
            continue
        loop = _LOOP.match(segment)
        if loop:
            start, interval = int(loop.group(1)), int(loop.group(2))
            if interval <= 0:
                candidates = [start]
            else:
                candidates = list(range(start, history_length + 1, interval))
        elif segment.isdigit():
            candidates = [int(segment)]
        else:
            logger.debug("Ignoring malformed depth segment %r", segment)
            continue
        for depth in candidates:
            if depth <= history_length and depth not in depths:
                depths.append(depth)
    return depths


def model_matches(preset: PresetMessage, model_id: str | None) -> bool:
    """True if *preset* has no model patterns or one matches *model_id*.

    Patterns are matched case-insensitively against the model id without
    its ``profile:`` prefix, and against the bare name after the last ``/``.
    """
    if not preset.model_patterns:
        return True
    if not model_id:
        return False
    name = model_id.split(":", 1)[1] if ":" in model_id else model_id
    candidates = [name, name.rsplit("/", 1)[-1]]
    for pattern in preset.model_patterns:
        try:
            regex = re.compile(pattern, re.IGNORECASE)
        except re.error:
            logger.warning("Invalid model pattern %r on preset %s", pattern, preset.id)
            continue
        if any(c and regex.search(c) for c in candidates):
            return True
    return False


def apply_depth_injections(
    history: list[PipelineMessage], injections: list[_Injection]
) -> list[PipelineMessage]:
    groups: dict[int, list[_Injection]] = {}
    for injection in injections:
        strategy = injection.strategy
        if strategy.depth_config:
            depths = parse_depth_config(strategy.depth_config, len(history))
        else:
            depths = [strategy.depth or 0]
        for depth in depths:
            groups.setdefault(depth, []).append(injection)

    result = list(history)
    for depth in sorted(groups, reverse=True):
        group = sorted(groups[depth], key=lambda i: i.strategy.order)
        at = max(0, len(result) - depth)
        result[at:at] = [
            PipelineMessage(
                role=i.message.role,
                content=i.message.content,
                source_type=SOURCE_DEPTH_INJECTION,
                source_id=i.message.source_id,
            )
            for i in group
        ]
    return result


def _preset_message(preset: PresetMessage, source_type: str) -> PipelineMessage:
    return PipelineMessage(
        role=preset.role.value,
        content=preset.content,
        source_type=source_type,
        source_id=preset.id,
        name=preset.name,
    )


def assemble_injections(context: PipelineContext) -> None:
    session = context.session
    presets = [
        p for p in context.agent.preset_messages
        if p.is_enabled and model_matches(p, context.model_id)
    ]
    system_prompt = session.system_prompt_override or context.agent.system_prompt
    if not presets and not system_prompt and not context.worldbook_entries:
        context.log(PROCESSOR_ID, "info", "no presets or injections; skipped")
        return

    skeleton: list[PresetMessage] = []
    depth_injections: list[_Injection] = []
    anchors: dict[str, dict[str, list[_Injection]]] = {}
    for preset in presets:
        strategy = preset.injection
        if strategy is None or preset.anchor is not None:
            skeleton.append(preset)
        elif strategy.is_depth:
            depth_injections.append(
                _Injection(_preset_message(preset, SOURCE_DEPTH_INJECTION), strategy)
            )
        elif strategy.anchor_target:
            slot = anchors.setdefault(strategy.anchor_target, {"before": [], "after": []})
            slot[strategy.anchor_position].append(
                _Injection(_preset_message(preset, SOURCE_ANCHOR_INJECTION), strategy)
            )
        else:
            skeleton.append(preset)

    floating: list[PipelineMessage] = []
    for entry in sorted(context.worldbook_entries, key=lambda e: e.order):
        message = PipelineMessage(
            role=entry.role, content=entry.content,
            source_type=SOURCE_WORLDBOOK, source_id=entry.id or None,
        )
        if entry.depth is None:
            floating.append(message)
        else:
            depth_injections.append(
                _Injection(message, InjectionStrategy(depth=entry.depth, order=entry.order))
            )

    def anchored(target: str, position: str) -> list[PipelineMessage]:
        group = anchors.get(target, {}).get(position, [])
        return [i.message for i in sorted(group, key=lambda i: i.strategy.order)]

    def emit_skeleton(part: list[PresetMessage]) -> None:
        for preset in part:
            if preset.anchor is None:
                out.append(_preset_message(preset, SOURCE_AGENT_PRESET))
                continue
            out.extend(anchored(preset.anchor, "before"))
            if preset.content.strip():
                out.append(_preset_message(preset, SOURCE_AGENT_PRESET))
            out.extend(anchored(preset.anchor, "after"))

    known_anchors = {p.anchor for p in skeleton if p.anchor} | {CHAT_HISTORY_ANCHOR}
    for target in anchors.keys() - known_anchors:
        logger.warning("No anchor %r in agent presets; injections dropped", target)
        context.log(PROCESSOR_ID, "warn", f"unknown anchor {target!r}")

    history_at = next(
        (i for i, p in enumerate(skeleton) if p.anchor == CHAT_HISTORY_ANCHOR), None
    )
    before = skeleton if history_at is None else skeleton[:history_at]
    after = [] if history_at is None else skeleton[history_at + 1:]

    out: list[PipelineMessage] = []
    if system_prompt:
        out.append(PipelineMessage(
            role="system", content=system_prompt, source_type=SOURCE_SYSTEM_PROMPT,
        ))
    emit_skeleton(before)
    out.extend(anchored(CHAT_HISTORY_ANCHOR, "before"))
    out.extend(floating)
    out.extend(apply_depth_injections(context.messages, depth_injections))
    out.extend(anchored(CHAT_HISTORY_ANCHOR, "after"))
    emit_skeleton(after)

    context.log(
        PROCESSOR_ID, "info",
        f"{len(out) - len(context.messages)} messages injected around history",
    )
    context.messages = out


injection_assembler = ContextProcessor(
    id=PROCESSOR_ID,
    name="Injection assembler",
    priority=400,
    execute=assemble_injections,
)
