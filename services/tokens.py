"""Token 估算

两种估算方式：
    - estimate_tokens: 预算用，ceil(字符数 / 4)
    - estimate_usage_tokens: 提供方未返回 usage 时的计费估算
"""
import math
from decimal import Decimal, ROUND_HALF_UP

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def chars_for_tokens(tokens: int) -> int:
    """Largest character count whose estimate fits in ``tokens``."""
    return max(tokens, 0) * CHARS_PER_TOKEN


def estimate_usage_tokens(text: str) -> int:
    """Blend of word-based and char-based estimates, rounded half up.

    ``round(0.5 * words * 1.3 + 0.5 * chars / 4)``
    """
    if not text:
        return 0
    words = len(text.split())
    raw = 0.5 * words * 1.3 + 0.5 * len(text) / CHARS_PER_TOKEN
    return int(Decimal(repr(round(raw, 9))).quantize(Decimal(1), rounding=ROUND_HALF_UP))
