"""Heuristic, model-aware token estimation."""

from __future__ import annotations

import math
import re

# Words (letters/digits/underscore) or single non-space symbols.
_LEXICAL_RE = re.compile(r"\w+|[^\s\w]")

_DEFAULT_CHARS_PER_TOKEN = 4.0
_LEXICAL_TOKEN_FACTOR = 0.72
_MODEL_FAMILY_RATIOS: tuple[tuple[tuple[str, ...], float], ...] = (
    (("claude", "anthropic"), 3.6),
    (("gemini", "google"), 3.8),
    (("qwen", "deepseek"), 3.7),
)


def chars_per_token(model_hint: str | None = None) -> float:
    hint = (model_hint or "").lower()
    for needles, ratio in _MODEL_FAMILY_RATIOS:
        if any(needle in hint for needle in needles):
            return ratio
    return _DEFAULT_CHARS_PER_TOKEN


def estimate_tokens(text: str, model_hint: str | None = None) -> int:
    """
    Estimate the token count of *text*.

    Takes the larger of a character-ratio estimate and a lexical-piece
    estimate, so both prose and symbol-dense code are covered.

    >>> estimate_tokens("")
    0
    >>> estimate_tokens("a")
    1
    """
    if not text:
        return 0
    char_estimate = len(text) / chars_per_token(model_hint)
    lexical_estimate = len(_LEXICAL_RE.findall(text)) * _LEXICAL_TOKEN_FACTOR
    return max(1, math.ceil(max(char_estimate, lexical_estimate)))
