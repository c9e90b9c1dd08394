"""Ordered, independently failable context pipeline.

ContextPipeline owns the processor registry and the enabled set. It is
plain data plus a sort-filter-iterate loop: registering a processor
with an existing id replaces it.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from typing import Iterable

from threadloom.exceptions import ProcessorNotFoundError
from threadloom.pipeline.base import ContextProcessor, PipelineContext

logger = logging.getLogger(__name__)

_PRIORITY_STEP = 100


class ContextPipeline:
    """Registry and runner for context processors."""

    def __init__(self, processors: Iterable[ContextProcessor] = ()) -> None:
        self._processors: dict[str, ContextProcessor] = {}
        self._defaults: dict[str, ContextProcessor] = {}
        self._enabled: set[str] = set()
        for processor in processors:
            self.register(processor)

    # ---- Registry ----

    def register(self, processor: ContextProcessor) -> None:
        """Add *processor*, replacing any processor with the same id."""
        if processor.id in self._processors:
            logger.warning("Processor %s already registered; overriding", processor.id)
        self._processors[processor.id] = processor
        self._defaults.setdefault(processor.id, processor)
        if processor.default_enabled:
            self._enabled.add(processor.id)
        else:
            self._enabled.discard(processor.id)

    def unregister(self, processor_id: str) -> None:
        if processor_id not in self._processors:
            raise ProcessorNotFoundError(processor_id)
        del self._processors[processor_id]
        self._defaults.pop(processor_id, None)
        self._enabled.discard(processor_id)

    def get(self, processor_id: str) -> ContextProcessor | None:
        return self._processors.get(processor_id)

    def set_enabled(self, processor_id: str, enabled: bool) -> None:
        if processor_id not in self._processors:
            raise ProcessorNotFoundError(processor_id)
        if enabled:
            self._enabled.add(processor_id)
        else:
            self._enabled.discard(processor_id)

    def is_enabled(self, processor_id: str) -> bool:
        return processor_id in self._enabled

    @property
    def enabled_ids(self) -> set[str]:
        return set(self._enabled)

    def ordered(self) -> list[ContextProcessor]:
        """All processors by ascending priority; ties keep registration order."""
        return sorted(self._processors.values(), key=lambda p: p.priority)

    def active(self) -> list[ContextProcessor]:
        return [p for p in self.ordered() if p.id in self._enabled]

    def reorder(self, ordered_ids: list[str]) -> None:
        """Renumber priorities 100, 200, ... in the given order.

        Processors not mentioned keep their relative order and follow the
        mentioned ones. Unknown ids are ignored.
        """
        mentioned = [i for i in dict.fromkeys(ordered_ids) if i in self._processors]
        rest = [p.id for p in self.ordered() if p.id not in set(mentioned)]
        for position, processor_id in enumerate(mentioned + rest, start=1):
            self._processors[processor_id] = dataclasses.replace(
                self._processors[processor_id], priority=position * _PRIORITY_STEP
            )

    def reset_to_defaults(self) -> None:
        """Restore original priorities and default enabled flags."""
        self._processors = dict(self._defaults)
        self._enabled = {p.id for p in self._defaults.values() if p.default_enabled}

    # ---- Execution ----

    def execute(self, context: PipelineContext) -> PipelineContext:
        """Run every enabled processor in priority order.

        A processor that raises is reported in ``context.failures`` as
        ``processing step [name] failed`` and the remaining processors still
        run on whatever state it left behind.
        """
        for processor in self.active():
            started = time.perf_counter()
            try:
                processor.execute(context)
            except Exception as exc:
                message = f"processing step [{processor.name}] failed"
                logger.warning("%s: %s", message, exc, exc_info=True)
                context.failures.append(message)
                context.log(processor.id, "error", f"{message}: {exc}")
                continue
            logger.debug(
                "Processor %s finished in %.1f ms (%d messages)",
                processor.id,
                (time.perf_counter() - started) * 1000,
                len(context.messages),
            )
        return context
