"""
Simple token counting utilities with configurable strategies.

Strategies:
- char_approx: approximate by character length (≈4 chars per token)
- whitespace: count whitespace-delimited tokens

World-info budgets are charged with ``estimate_tokens``, which never returns
less than one token so that empty entries still consume budget.
"""

from math import ceil
from typing import Optional

DEFAULT_CHARS_PER_TOKEN = 4


def count_tokens(text: Optional[str], strategy: str = "char_approx", divisor: Optional[int] = None) -> int:
    """
    Count tokens using the chosen strategy.

    Args:
        text: input text (None treated as empty)
        strategy: "char_approx" | "whitespace"
        divisor: characters per token for char_approx (defaults to 4)

    Returns:
        Estimated token count as int
    """
    if not text:
        return 0

    if strategy.lower() == "whitespace":
        return len(text.split())

    div = divisor if divisor and divisor > 0 else DEFAULT_CHARS_PER_TOKEN
    return int(ceil(len(text) / div))


def estimate_tokens(text: Optional[str], divisor: Optional[int] = None) -> int:
    return max(1, count_tokens(text, strategy="char_approx", divisor=divisor))
