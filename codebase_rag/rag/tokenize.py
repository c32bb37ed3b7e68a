"""Tokenization shared by the embedding providers and keyword search."""

from __future__ import annotations

import re

_NON_WORD_RE = re.compile(r"[^\w\s]")


def tokenize(text: str) -> list[str]:
    """Lower-case word tokens longer than one character, punctuation dropped."""
    return [t for t in _NON_WORD_RE.sub(" ", text.lower()).split() if len(t) > 1]


def bigrams(tokens: list[str]) -> list[str]:
    return [f"{a}_{b}" for a, b in zip(tokens, tokens[1:])]
