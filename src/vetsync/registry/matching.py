"""Fuzzy record matching for clinics and other named registry entries.

Similarity is normalized Levenshtein distance over lower-cased strings:
``(longest - distance) / longest``. Two empty strings are identical (1.0).
Only candidates scoring strictly above MATCH_THRESHOLD are accepted.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import TypeVar

from rapidfuzz.distance import Levenshtein

MATCH_THRESHOLD = 0.8

T = TypeVar("T")


def levenshtein_distance(a: str, b: str) -> int:
    """Minimum single-character insertions, deletions or substitutions from a to b."""
    return Levenshtein.distance(a, b)


def similarity(a: str, b: str) -> float:
    """Case-insensitive normalized similarity in [0, 1]."""
    a, b = a.lower(), b.lower()
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return (longest - levenshtein_distance(a, b)) / longest


def find_best_match(
    target: str,
    candidates: Iterable[T],
    key: Callable[[T], str],
    threshold: float = MATCH_THRESHOLD,
) -> tuple[T, float] | None:
    """Return the best-scoring candidate above ``threshold``, or None.

    Ties keep the first candidate encountered, so callers control the
    tie-break through candidate order.
    """
    best: T | None = None
    best_score = 0.0
    for candidate in candidates:
        score = similarity(target, key(candidate))
        if score > best_score and score > threshold:
            best = candidate
            best_score = score
    if best is None:
        return None
    return best, best_score
