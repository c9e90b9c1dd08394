"""Context pipeline: turns the active branch into a model request."""

from __future__ import annotations

from typing import TYPE_CHECKING

from threadloom.pipeline.base import (
    ContextProcessor,
    PipelineContext,
    PipelineLog,
    PipelineMessage,
)
from threadloom.pipeline.pipeline import ContextPipeline

if TYPE_CHECKING:
    from threadloom.pipeline.processors import FormatterOptions
    from threadloom.protocols import TokenCounter


def build_default_pipeline(
    token_counter: TokenCounter | None = None,
    formatter_options: FormatterOptions | None = None,
) -> ContextPipeline:
    """Create a pipeline holding every built-in processor.

    Uses a TiktokenCounter when no *token_counter* is given.
    """
    from threadloom.pipeline import processors

    if token_counter is None:
        from threadloom.tokens import TiktokenCounter

        token_counter = TiktokenCounter()

    return ContextPipeline([
        processors.session_loader,
        processors.regex_rules,
        processors.transcription,
        processors.injection_assembler,
        processors.make_token_limiter(token_counter),
        processors.make_message_formatter(formatter_options),
        processors.asset_resolver,
    ])


__all__ = [
    "ContextPipeline",
    "ContextProcessor",
    "PipelineContext",
    "PipelineLog",
    "PipelineMessage",
    "build_default_pipeline",
]
