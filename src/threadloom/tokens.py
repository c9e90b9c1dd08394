"""Token counting implementations for Threadloom.

Provides TiktokenCounter (production use), CharTokenCounter (offline
estimate) and NullTokenCounter (testing). All implement the TokenCounter
protocol from protocols.py.
"""

from __future__ import annotations

import math

_MESSAGE_OVERHEAD = 3
_NAME_OVERHEAD = 1
_REPLY_PRIMER = 3


def _message_text_parts(message: dict) -> list[str]:
    """Text values in a message dict, including text content parts."""
    parts: list[str] = []
    for value in message.values():
        if isinstance(value, str):
            parts.append(value)
        elif isinstance(value, list):
            for part in value:
                if isinstance(part, dict) and isinstance(part.get("text"), str):
                    parts.append(part["text"])
    return parts


class TiktokenCounter:
    """Token counter using tiktoken (OpenAI's tokenizer).

    Lazily imports tiktoken and caches the Encoding instance.
    Falls back to o200k_base encoding if model is unknown.
    """

    def __init__(self, model: str = "gpt-4o", encoding_name: str | None = None) -> None:
        import tiktoken

        if encoding_name is not None:
            self._enc = tiktoken.get_encoding(encoding_name)
        else:
            try:
                self._enc = tiktoken.encoding_for_model(model)
            except KeyError:
                self._enc = tiktoken.get_encoding("o200k_base")

        self._encoding_name = self._enc.name

    @property
    def encoding_name(self) -> str:
        return self._encoding_name

    def count_text(self, text: str) -> int:
        if not text:
            return 0
        return len(self._enc.encode(text))

    def count_messages(self, messages: list[dict]) -> int:
        """Count tokens in a message list including overhead.

        3 tokens per message, 1 per name field, 3 for the reply primer.
        List content is counted by its text parts only.
        """
        if not messages:
            return 0

        total = 0
        for message in messages:
            total += _MESSAGE_OVERHEAD
            for text in _message_text_parts(message):
                total += len(self._enc.encode(text))
            if "name" in message:
                total += _NAME_OVERHEAD
        total += _REPLY_PRIMER
        return total


class CharTokenCounter:
    """Estimates tokens as one per ``chars_per_token`` characters.

    No tokenizer download required; used where exact counts do not
    matter or no network is available.
    """

    def __init__(self, chars_per_token: int = 4) -> None:
        self._chars_per_token = chars_per_token

    def count_text(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self._chars_per_token)

    def count_messages(self, messages: list[dict]) -> int:
        if not messages:
            return 0
        total = sum(
            _MESSAGE_OVERHEAD + sum(self.count_text(t) for t in _message_text_parts(m))
            for m in messages
        )
        return total + _REPLY_PRIMER


class NullTokenCounter:
    """Token counter that always returns 0."""

    def count_text(self, text: str) -> int:
        return 0

    def count_messages(self, messages: list[dict]) -> int:
        return 0
