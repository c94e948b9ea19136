"""Word policies deciding what counts as a single story word."""

from __future__ import annotations

import unicodedata
from typing import Callable

WordPolicy = Callable[[str], bool]

# Unicode categories that never belong inside a word: separators and controls.
_FORBIDDEN_CATEGORIES = {"Zs", "Zl", "Zp", "Cc", "Cf"}

MAX_WORD_LENGTH = 64


def _is_clean_token(token: str) -> bool:
    if token == "" or len(token) > MAX_WORD_LENGTH:
        return False
    return not any(unicodedata.category(char) in _FORBIDDEN_CATEGORIES for char in token)


def single_word(candidate: str) -> bool:
    """Accept exactly one token with no whitespace, separator or control characters."""
    return _is_clean_token(candidate)


def short_pair(candidate: str) -> bool:
    """Accept one token, or two when either of them has at most two characters ("a cat", "to be")."""
    tokens = candidate.split()
    if not tokens or " ".join(tokens) != candidate:
        return False
    if len(tokens) == 1:
        return _is_clean_token(tokens[0])
    if len(tokens) == 2:
        first, second = tokens
        return _is_clean_token(first) and _is_clean_token(second) and (len(first) <= 2 or len(second) <= 2)
    return False


WORD_POLICIES: dict[str, WordPolicy] = {
    "single": single_word,
    "short_pair": short_pair,
}


def get_word_policy(name: str) -> WordPolicy:
    try:
        return WORD_POLICIES[name]
    except KeyError:
        raise ValueError(f"Unknown word policy {name!r}, expected one of: {', '.join(sorted(WORD_POLICIES))}") from None
