"""Built-in context processors, in pipeline order."""

from threadloom.pipeline.processors.asset_resolver import asset_resolver
from threadloom.pipeline.processors.injection import injection_assembler
from threadloom.pipeline.processors.message_formatter import (
    FormatterOptions,
    make_message_formatter,
)
from threadloom.pipeline.processors.regex_rules import regex_rules
from threadloom.pipeline.processors.session_loader import session_loader
from threadloom.pipeline.processors.token_limiter import make_token_limiter
from threadloom.pipeline.processors.transcription import transcription

__all__ = [
    "FormatterOptions",
    "asset_resolver",
    "injection_assembler",
    "make_message_formatter",
    "make_token_limiter",
    "regex_rules",
    "session_loader",
    "transcription",
]
