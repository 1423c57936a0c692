from __future__ import annotations

import re
from typing import Iterable

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+|\n+")
_WORD = re.compile(r"[a-z0-9']+")
_STOP_WORDS = frozenset(
    {
        "this", "that", "with", "have", "will", "from", "they", "know", "want", "been",
        "good", "much", "some", "time", "very", "when", "come", "here", "just", "like",
        "long", "make", "many", "over", "such", "take", "than", "them", "well", "were",
        "what", "which", "where", "about", "would", "could", "should", "there", "their",
        "into", "your", "does",
    }
)


def split_sentences(text: str) -> list[str]:
    return [part.strip() for part in _SENTENCE_SPLIT.split(text or "") if part and part.strip()]


def tokenize(text: str) -> list[str]:
    return _WORD.findall((text or "").lower())


def word_set(text: str) -> frozenset[str]:
    return frozenset(tokenize(text))


def jaccard(left: Iterable[str] | str, right: Iterable[str] | str) -> float:
    """Word-overlap similarity in [0, 1]; strings are tokenized first."""
    a = word_set(left) if isinstance(left, str) else frozenset(left)
    b = word_set(right) if isinstance(right, str) else frozenset(right)
    if not a and not b:
        return 0.0
    return len(a & b) / len(a | b)


def extract_keywords(text: str, *, limit: int | None = None, min_length: int = 4) -> list[str]:
    """Content words of at least ``min_length`` characters, first occurrence order, no stop words."""
    seen: dict[str, None] = {}
    for word in tokenize(text):
        if len(word) < min_length or word in _STOP_WORDS or word.isdigit():
            continue
        seen.setdefault(word, None)
    keywords = list(seen)
    return keywords[:limit] if limit is not None else keywords


__all__ = ["extract_keywords", "jaccard", "split_sentences", "tokenize", "word_set"]
