"""Edit-distance string similarity for vendor/name fuzzy matching"""

from typing import Iterable, Optional, Tuple


def levenshtein_distance(first: str, second: str) -> int:
    """
    Levenshtein distance using two rows instead of the full matrix.

    Returns max(len) early when the length gap alone exceeds the shorter
    string, since such pairs can never be similar enough to matter.
    """
    m, n = len(first), len(second)

    if m == 0:
        return n
    if n == 0:
        return m

    if abs(m - n) > min(m, n):
        return max(m, n)

    previous = list(range(n + 1))
    current = [0] * (n + 1)

    for i in range(1, m + 1):
        current[0] = i
        for j in range(1, n + 1):
            if first[i - 1] == second[j - 1]:
                current[j] = previous[j - 1]
            else:
                current[j] = 1 + min(previous[j - 1], previous[j], current[j - 1])
        previous, current = current, previous

    return previous[n]


def string_similarity(first: str, second: str) -> float:
    """Similarity on a 0-1 scale: 1 identical, 0 nothing in common"""
    a = (first or "").lower().strip()
    b = (second or "").lower().strip()

    if a == b:
        return 1.0
    if not a or not b:
        return 0.0

    distance = levenshtein_distance(a, b)
    return 1 - distance / max(len(a), len(b))


def fuzzy_contains(haystack: str, needle: str, threshold: float = 0.7) -> bool:
    """Substring check that falls back to per-word similarity"""
    text = haystack.lower()
    target = needle.lower()

    if target in text:
        return True

    return any(string_similarity(word, target) >= threshold for word in text.split())


def find_best_match(target: str, candidates: Iterable[str]) -> Tuple[Optional[str], float]:
    """Return (best candidate, similarity); (None, 0.0) when nothing overlaps"""
    best_match: Optional[str] = None
    best_similarity = 0.0

    for candidate in candidates:
        similarity = string_similarity(target, candidate)
        if similarity > best_similarity:
            best_similarity = similarity
            best_match = candidate

    return best_match, best_similarity
