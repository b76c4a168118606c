"""
REFINERY Similarity — keyword and n-gram overlap.

Every clustering decision in the engine (consensus, triage, ADR
matching, deliberation agreement) goes through these functions, so
they stay deterministic and dependency-free.
"""

from __future__ import annotations

import re

STOP_WORDS = frozenset({
    "the", "a", "an", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "can", "shall", "to", "of", "in", "for",
    "on", "with", "at", "by", "from", "as", "into", "through", "during",
    "before", "after", "and", "but", "or", "not", "no", "so", "yet",
    "both", "each", "all", "any", "more", "most", "other", "some", "such",
    "only", "own", "same", "than", "too", "very", "that", "this", "these",
    "those", "it", "its", "also", "use", "using", "used", "needs", "need",
    "must", "ensure", "implement", "add", "create", "update", "server",
})

_SPLIT = re.compile(r"[^a-z0-9]+")


def extract_keywords(text: str) -> set[str]:
    """Lower-cased words longer than two characters, minus stop words."""
    return {
        word for word in _SPLIT.split(text.lower())
        if len(word) > 2 and word not in STOP_WORDS
    }


def _jaccard(a: set, b: set) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def keyword_jaccard(a: str, b: str) -> float:
    return _jaccard(extract_keywords(a), extract_keywords(b))


def _ngrams(text: str, n: int) -> set[str]:
    words = text.lower().split()
    if not words:
        return set()
    if len(words) < n:
        return {" ".join(words)}
    return {" ".join(words[i:i + n]) for i in range(len(words) - n + 1)}


def ngram_jaccard(a: str, b: str, n: int = 3) -> float:
    return _jaccard(_ngrams(a, n), _ngrams(b, n))


def combined_similarity(a: str, b: str) -> float:
    return max(keyword_jaccard(a, b), ngram_jaccard(a, b, n=2))
