"""Deterministic string similarity for deciding whether two facts say the same thing.

Jaro-Winkler over normalized text. No embeddings, no models: the same two
strings always score the same, which keeps consolidation and linking
reproducible.
"""

import re
import unicodedata

# Winkler prefix scale and maximum prefix length credited
PREFIX_SCALE = 0.1
MAX_PREFIX = 4

_NON_WORD = re.compile(r"\W+")


def normalize(text: str) -> str:
    """Lowercase, NFKC-fold and collapse punctuation/whitespace runs to one space."""
    text = unicodedata.normalize("NFKC", text or "")
    return _NON_WORD.sub(" ", text.lower()).strip()


def jaro(s1: str, s2: str) -> float:
    """Jaro similarity of two strings, in [0, 1]."""
    if s1 == s2:
        return 1.0
    len1, len2 = len(s1), len(s2)
    if len1 == 0 or len2 == 0:
        return 0.0

    match_window = max(len1, len2) // 2 - 1
    if match_window < 0:
        match_window = 0

    s1_matches = [False] * len1
    s2_matches = [False] * len2

    matches = 0
    for i in range(len1):
        start = max(0, i - match_window)
        end = min(i + match_window + 1, len2)
        for j in range(start, end):
            if s2_matches[j] or s1[i] != s2[j]:
                continue
            s1_matches[i] = True
            s2_matches[j] = True
            matches += 1
            break

    if matches == 0:
        return 0.0

    # Count half-transpositions between the matched characters
    transpositions = 0
    k = 0
    for i in range(len1):
        if not s1_matches[i]:
            continue
        while not s2_matches[k]:
            k += 1
        if s1[i] != s2[k]:
            transpositions += 1
        k += 1

    m = float(matches)
    return (m / len1 + m / len2 + (m - transpositions / 2) / m) / 3.0


def jaro_winkler(s1: str, s2: str, prefix_scale: float = PREFIX_SCALE) -> float:
    """Jaro-Winkler similarity: Jaro boosted by the length of the common prefix."""
    j = jaro(s1, s2)
    prefix = 0
    for a, b in zip(s1[:MAX_PREFIX], s2[:MAX_PREFIX]):
        if a != b:
            break
        prefix += 1
    return j + prefix * prefix_scale * (1.0 - j)


def calculate_similarity(a: str, b: str) -> float:
    """Score how alike two facts are, in [0, 1].

    Both inputs are normalized first, so case and punctuation differences
    do not count. Identical normalized text scores exactly 1.0.
    """
    n1 = normalize(a)
    n2 = normalize(b)
    if n1 == n2:
        return 1.0
    if not n1 or not n2:
        return 0.0
    return max(0.0, min(1.0, jaro_winkler(n1, n2)))
