"""Character-based token estimation used for every budget computation."""

from __future__ import annotations

import math

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Estimate tokens as ``ceil(len(text) / 4)``.

    Deliberately coarse: it over-counts rather than under-counts for most
    English text and never needs a tokenizer.
    """
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def max_chars_for(tokens: int) -> int:
    """Largest character length whose estimate stays within *tokens*."""
    return max(0, int(tokens)) * CHARS_PER_TOKEN


class TokenCounter:
    """Counts tokens for budget management."""

    def count(self, text: str) -> int:
        """Count tokens in a text string."""
        return estimate_tokens(text)

    def count_lines(self, lines: list[str]) -> int:
        """Sum of per-line estimates (joining newlines are not counted)."""
        return sum(estimate_tokens(line) for line in lines)
