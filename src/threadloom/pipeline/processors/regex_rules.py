"""User-defined regex substitutions over history messages.

Rules use JavaScript-style flags (``g``, ``i``, ``m``, ``s``) and ``$1`` /
``$&`` replacement references, since that is how they are authored.
"""

from __future__ import annotations

import logging
import re

from threadloom.models.config import RegexRule
from threadloom.pipeline.base import ContextProcessor, PipelineContext

logger = logging.getLogger(__name__)

PROCESSOR_ID = "regex-rules"

_FLAG_MAP = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}
_REFERENCE = re.compile(r"\$(\$|&|\d{1,2})")


def compile_rule(rule: RegexRule) -> tuple[re.Pattern[str], int]:
    """Compile *rule* into a pattern and a ``re.sub`` count (0 = all)."""
    flags = 0
    for ch in rule.flags:
        flags |= _FLAG_MAP.get(ch, 0)
    return re.compile(rule.pattern, flags), 0 if "g" in rule.flags else 1


def _expand(replacement: str, match: re.Match[str]) -> str:
    def ref(m: re.Match[str]) -> str:
        token = m.group(1)
        if token == "$":
            return "$"
        if token == "&":
            return match.group(0)
        index = int(token)
        if index <= (match.re.groups or 0):
            return match.group(index) or ""
        return m.group(0)

    return _REFERENCE.sub(ref, replacement)


def apply_rule(rule: RegexRule, text: str) -> str:
    pattern, count = compile_rule(rule)
    return pattern.sub(lambda m: _expand(rule.replacement, m), text, count=count)


def _in_depth_range(rule: RegexRule, depth: int) -> bool:
    if rule.depth_range is None:
        return True
    low, high = rule.depth_range
    if low is not None and depth < low:
        return False
    return high is None or depth <= high


def collect_rules(context: PipelineContext) -> list[RegexRule]:
    """Enabled rules ordered by preset priority, then rule order."""
    presets = sorted(
        (p for p in context.agent.regex_presets if p.enabled),
        key=lambda p: p.priority,
    )
    rules: list[RegexRule] = []
    for preset in presets:
        rules.extend(sorted((r for r in preset.rules if r.enabled), key=lambda r: r.order))
    return rules


def apply_regex_rules(context: PipelineContext) -> None:
    rules = collect_rules(context)
    if not rules:
        return
    total = len(context.messages)
    applied = 0
    for position, message in enumerate(context.messages):
        if not isinstance(message.content, str):
            continue
        depth = total - 1 - position
        for rule in rules:
            if rule.target_roles and message.role not in {r.value for r in rule.target_roles}:
                continue
            if not _in_depth_range(rule, depth):
                continue
            try:
                updated = apply_rule(rule, message.content)
            except re.error as exc:
                logger.warning("Skipping invalid regex %r: %s", rule.pattern, exc)
                context.log(PROCESSOR_ID, "warn", f"invalid rule {rule.pattern!r}: {exc}")
                continue
            if updated != message.content:
                message.content = updated
                applied += 1
    context.log(PROCESSOR_ID, "info", f"{applied} substitutions over {total} messages")


regex_rules = ContextProcessor(
    id=PROCESSOR_ID,
    name="Regex rules",
    priority=200,
    execute=apply_regex_rules,
)
