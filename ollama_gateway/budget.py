"""Context-window budgeting for prompts and chat conversations."""
from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from .config import DEFAULT_CONTEXT_LIMIT, DEFAULT_CONTEXT_LIMITS, DEFAULT_LIMIT_KEY, Settings
from .tokens import estimate_tokens

logger = logging.getLogger(__name__)

PROMPT_SHARE = 0.7
HEAD_SHARE = 0.8
CHARS_PER_TOKEN = 4
RECENT_MESSAGE_COUNT = 3
MIN_TRUNCATED_MESSAGE_TOKENS = 32

PROMPT_MARKER = "\n\n[... content truncated due to length ...]\n\n"
PROMPT_MARKER_RESERVE = 100
MESSAGE_MARKER = "\n[... message truncated due to length ...]\n"
MESSAGE_MARKER_RESERVE = 50

Message = Mapping[str, Any]
Content = Union[str, Sequence[Message]]


def truncate_text(text: str, max_chars: int, marker: str, reserve: int) -> str:
    """Keep the head and tail of ``text`` around ``marker``.

    The head takes 80% of ``max_chars``; the tail fills what is left once
    ``reserve`` characters have been set aside for the marker. The reserve is
    capped at a tenth of ``max_chars`` so small windows still keep a tail.
    """

    if len(text) <= max_chars:
        return text
    head = int(max_chars * HEAD_SHARE)
    reserve = min(reserve, max_chars // 10)
    tail = max(max_chars - head - reserve, 0)
    return text[:head] + marker + (text[len(text) - tail:] if tail else "")


class ContextBudgeter:
    """Resize prompts and conversations to fit a model's context window.

    Thirty percent of each model's context length is left for the response.
    A ``"default"`` entry in ``context_limits`` replaces ``default_limit``.
    """

    def __init__(
        self,
        context_limits: Optional[Mapping[str, int]] = None,
        default_limit: int = DEFAULT_CONTEXT_LIMIT,
    ) -> None:
        self._limits = dict(DEFAULT_CONTEXT_LIMITS if context_limits is None else context_limits)
        self._default_limit = self._limits.pop(DEFAULT_LIMIT_KEY, default_limit)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ContextBudgeter":
        return cls(settings.context_limits)

    def context_limit(self, model: str) -> int:
        return self._limits.get(model, self._default_limit)

    def budget_for(self, model: str) -> int:
        return math.floor(self.context_limit(model) * PROMPT_SHARE)

    def fit(self, model: str, content: Content) -> Content:
        if isinstance(content, str):
            return self.fit_prompt(model, content)
        return self.fit_messages(model, content)

    def fit_prompt(self, model: str, prompt: str) -> str:
        budget = self.budget_for(model)
        current = estimate_tokens(prompt)
        if current <= budget:
            return prompt

        logger.warning(
            "Prompt too long, truncating",
            extra={
                "model": model,
                "original_tokens": current,
                "max_tokens": budget,
                "context_limit": self.context_limit(model),
            },
        )
        truncated = _shrink_to_budget(prompt, budget, PROMPT_MARKER, PROMPT_MARKER_RESERVE)
        logger.info(
            "Prompt truncated",
            extra={
                "original_length": len(prompt),
                "truncated_length": len(truncated),
                "tokens_saved": current - estimate_tokens(truncated),
            },
        )
        return truncated

    def fit_messages(self, model: str, messages: Sequence[Message]) -> Sequence[Message]:
        budget = self.budget_for(model)
        current = estimate_tokens(messages)
        if current <= budget:
            return messages

        logger.warning(
            "Messages too long, truncating",
            extra={
                "model": model,
                "original_tokens": current,
                "max_tokens": budget,
                "context_limit": self.context_limit(model),
                "message_count": len(messages),
            },
        )

        system_messages = [m for m in messages if m.get("role") == "system"]
        recent = [m for m in messages if m.get("role") != "system"][-RECENT_MESSAGE_COUNT:]
        remaining = budget - estimate_tokens(system_messages)

        # Walk newest to oldest; the first message that overflows is cut down
        # to the remaining budget and everything older is dropped.
        kept: List[Dict[str, Any]] = []
        for message in reversed(recent):
            content = message.get("content") or ""
            tokens = estimate_tokens(content)
            if tokens <= remaining:
                kept.append(dict(message))
                remaining -= tokens
                continue
            if remaining >= MIN_TRUNCATED_MESSAGE_TOKENS:
                shortened = _shrink_to_budget(
                    content, remaining, MESSAGE_MARKER, MESSAGE_MARKER_RESERVE
                )
                kept.append({**message, "content": shortened})
            break

        processed = [dict(m) for m in system_messages] + list(reversed(kept))
        logger.info(
            "Messages processed",
            extra={
                "original_count": len(messages),
                "processed_count": len(processed),
                "tokens_saved": current - estimate_tokens(processed),
            },
        )
        return processed


def _shrink_to_budget(text: str, budget: int, marker: str, reserve: int) -> str:
    max_chars = budget * CHARS_PER_TOKEN
    candidate = truncate_text(text, max_chars, marker, reserve)
    tokens = estimate_tokens(candidate)
    while tokens > budget and max_chars > 0:
        max_chars = min(max_chars - 1, int(max_chars * budget / tokens))
        candidate = truncate_text(text, max(max_chars, 0), marker, reserve)
        tokens = estimate_tokens(candidate)
    return candidate
