"""Tokenizer shared by BM25 indexing and BM25 querying.

Statistics ("70%", "1.8x", "3.5") are high-value retrieval targets on a
marketing site, so numeric patterns are normalized before punctuation is
stripped instead of being shattered into fragments.
"""

from __future__ import annotations

import re
from typing import List

STOP_WORDS = frozenset({
    "the", "and", "for", "are", "but", "not", "you", "all", "can", "her",
    "was", "one", "our", "out", "day", "get", "has", "him", "his", "how",
    "its", "may", "new", "now", "old", "see", "than", "that", "this", "with",
})

_PERCENT = re.compile(r"(\d+(?:\.\d+)?)\s?%")
# Keeps alphanumerics, whitespace, hyphen and period (decimals); underscores go too.
_DISALLOWED = re.compile(r"[^\w\s.\-]|_")
_DIGIT = re.compile(r"\d")


def tokenize(text: str) -> List[str]:
    """Turn raw text into BM25 terms.

    Example:
        >>> tokenize("Customers see a 70% drop and 1.8x more output.")
        ['customers', '70percent', 'drop', '1.8x', 'more', 'output']
    """
    if not text:
        return []

    text = text.lower()
    text = _PERCENT.sub(r"\1percent", text)
    text = _DISALLOWED.sub(" ", text)

    tokens = []
    for raw in text.split():
        # sentence-final periods are not part of the word; inner ones (decimals) are
        token = raw.strip(".")
        if not token or token in STOP_WORDS:
            continue
        if _DIGIT.search(token) or len(token) > 2:
            tokens.append(token)
    return tokens
