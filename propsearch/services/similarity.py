from __future__ import annotations

from rapidfuzz.distance import Levenshtein


def levenshtein(a: str, b: str) -> int:
    return Levenshtein.distance(a, b)


def score(a: str, b: str) -> float:
    """Normalized edit-distance similarity in [0, 1].

    Case-sensitive; callers lower-case both sides first. Two empty strings score 1.
    """
    if not a and not b:
        return 1.0
    return Levenshtein.normalized_similarity(a, b)
