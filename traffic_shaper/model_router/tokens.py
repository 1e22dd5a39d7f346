"""Token counting and cost utilities.

Uses a character-based approximation (1 token ~ 4 characters). Only used
when the caller does not supply its own token estimate.
"""

from __future__ import annotations

import math

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str | None) -> int:
    """Estimate tokens from text. Monotonic in text length; 0 for empty text."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def calculate_cost(tokens: int, cost_per_1k_tokens: float) -> float:
    """Cost in USD for ``tokens`` at ``cost_per_1k_tokens``, rounded to 6 decimals."""
    if tokens <= 0 or cost_per_1k_tokens <= 0:
        return 0.0
    return round(tokens / 1000 * cost_per_1k_tokens, 6)
