"""Token counting: a pluggable approximation of provider tokenizers.

Uses ~4 characters per token as a simple heuristic. Not accurate
but sufficient for budget management.
"""

from __future__ import annotations

import json
import math
from typing import Protocol, Sequence

from ctxguard.core.types import Turn

# Heuristic: ~4 characters per token (works for most models)
CHARS_PER_TOKEN = 4

# Role marker and separators the provider adds around each message
_MESSAGE_OVERHEAD = 4


def estimate_tokens(text: str | None) -> int:
    """Estimate tokens from character count."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def format_token_count(count: int) -> str:
    """Format a token count for display: 999, 1.5k, 10k, 1.5m."""
    if count >= 1_000_000:
        return f"{count / 1_000_000:.1f}".rstrip("0").rstrip(".") + "m"
    if count >= 1000:
        return f"{count / 1000:.1f}".rstrip("0").rstrip(".") + "k"
    return str(count)


class TokenCounter(Protocol):
    def count_tokens(self, text: str) -> int: ...

    def count_message_tokens(self, turns: Sequence[Turn]) -> int: ...


class HeuristicTokenCounter:
    """Character-based token counter usable for any model name."""

    def __init__(self, model: str = "gpt-4") -> None:
        self.model = model

    def count_tokens(self, text: str) -> int:
        return estimate_tokens(text)

    def count_message_tokens(self, turns: Sequence[Turn]) -> int:
        total = 0
        for turn in turns:
            total += _MESSAGE_OVERHEAD
            total += estimate_tokens(turn.content)
            if turn.tool_calls:
                total += estimate_tokens(json.dumps([tc.to_dict() for tc in turn.tool_calls]))
        return total


def create_token_counter(model: str = "gpt-4") -> TokenCounter:
    return HeuristicTokenCounter(model)


def fallback_count(turns: Sequence[Turn]) -> int:
    """Character estimate used when a counter fails."""
    chars = sum(len(t.content or "") for t in turns)
    return math.ceil(chars / CHARS_PER_TOKEN) + _MESSAGE_OVERHEAD * len(turns)
