"""Word-based token estimation.

The estimate is deterministic and tokenizer-independent: roughly 1.3 tokens
per whitespace-delimited word, which accounts for subword splitting.
"""

from __future__ import annotations

from typing import Any, Iterable

from loguru import logger

ELLIPSIS = "..."
PER_MESSAGE_OVERHEAD = 4


def estimate_tokens(text: str) -> int:
    """Estimate tokens as ``ceil(words * 1.3)``; 0 for empty text."""
    if not text:
        return 0
    words = len(text.split())
    # Integer form of ceil(words * 1.3) avoids float rounding surprises
    return (words * 13 + 9) // 10


def _content_of(message: Any) -> str:
    if isinstance(message, dict):
        content = message.get("content", "")
    else:
        content = getattr(message, "content", "")
    return content if isinstance(content, str) else ""


def estimate_conversation(
    messages: Iterable[Any], overhead: int = PER_MESSAGE_OVERHEAD
) -> int:
    """Sum of per-message estimates plus a fixed per-message overhead.

    Accepts ``Message`` objects or ``{"role": ..., "content": ...}`` dicts.
    """
    total = 0
    for msg in messages:
        total += overhead + estimate_tokens(_content_of(msg))
    return total


def truncate_to_tokens(text: str, max_tokens: int, ellipsis: str = ELLIPSIS) -> str:
    """Shorten text to roughly ``max_tokens`` estimated tokens.

    Returns the input unchanged when it already fits. Otherwise the result is
    strictly shorter than the input and ends with ``ellipsis``; inputs too
    short to carry the marker, or with no words left before it, collapse to
    the empty string.
    """
    estimated = estimate_tokens(text)
    if estimated <= max_tokens:
        return text

    if len(text) <= len(ellipsis):
        return ""

    ratio = max(max_tokens, 0) / estimated
    char_limit = int(len(text) * ratio)
    # Leave room for the marker so the output never grows
    char_limit = min(char_limit, len(text) - len(ellipsis) - 1)

    prefix = text[: max(char_limit, 0)]
    last_space = prefix.rfind(" ")
    if last_space > 0:
        prefix = prefix[:last_space]
    prefix = prefix.rstrip()

    # The ratio is only an estimate; drop whole words until the result fits
    while prefix and estimate_tokens(prefix + ellipsis) > max_tokens:
        parts = prefix.rsplit(None, 1)
        prefix = parts[0].rstrip() if len(parts) > 1 else ""

    if not prefix:
        return ""
    return prefix + ellipsis


class TokenCounter:
    """Injectable wrapper around the estimation functions."""

    def __init__(
        self,
        per_message_overhead: int = PER_MESSAGE_OVERHEAD,
        ellipsis: str = ELLIPSIS,
    ):
        self.per_message_overhead = per_message_overhead
        self.ellipsis = ellipsis

    def count(self, text: str) -> int:
        """Count tokens in a text string."""
        return estimate_tokens(text)

    def count_messages(self, messages: Iterable[Any]) -> int:
        """Count total tokens in a list of chat messages."""
        return estimate_conversation(messages, self.per_message_overhead)

    def truncate(self, text: str, max_tokens: int) -> str:
        """Truncate text to a token budget."""
        fitted = truncate_to_tokens(text, max_tokens, self.ellipsis)
        if fitted is not text:
            logger.debug(
                f"Truncated text from {self.count(text)} to "
                f"{self.count(fitted)} tokens (budget: {max_tokens})"
            )
        return fitted
