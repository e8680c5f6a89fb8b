"""Approximate token counting for prompts and conversations."""
from __future__ import annotations

import math
from typing import Any, Mapping, Sequence, Union

WORD_WEIGHT = 1.3
CHAR_WEIGHT = 0.25

TokenInput = Union[str, Sequence[Any]]


def _content_of(message: Any) -> str:
    if isinstance(message, Mapping):
        return message.get("content") or ""
    return getattr(message, "content", "") or ""


def estimate_tokens(value: TokenInput) -> int:
    """Estimate the number of tokens the backend will see for ``value``.

    Strings are weighted by word and character count. Message sequences are
    the sum of their contents; roles and names are not counted.
    """

    if isinstance(value, str):
        words = len(value.split())
        return math.ceil(words * WORD_WEIGHT + len(value) * CHAR_WEIGHT)
    return sum(estimate_tokens(_content_of(message)) for message in value)
