"""Text and context similarity measures used by the matcher."""

import re
from collections.abc import Sequence

from chainmark.config import MatchWeights
from chainmark.models.bookmark import AnchorContext

_NON_WORD = re.compile(r"[^\w\s]", flags=re.UNICODE)

DEFAULT_WEIGHTS = MatchWeights()


def _words(text: str) -> set[str]:
    return {w for w in _NON_WORD.sub("", text.lower()).split() if w}


def jaccard_similarity(first: str, second: str) -> float:
    """Jaccard similarity of the lowercased word sets (punctuation dropped)."""
    words1 = _words(first)
    words2 = _words(second)
    if not words1 or not words2:
        return 0.0
    return len(words1 & words2) / len(words1 | words2)


def levenshtein_similarity(first: str, second: str) -> float:
    """1 - edit distance / longer length; 0 when either string is empty."""
    if not first or not second:
        return 0.0
    previous = list(range(len(second) + 1))
    for i, char1 in enumerate(first, start=1):
        current = [i]
        for j, char2 in enumerate(second, start=1):
            cost = 0 if char1 == char2 else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return 1 - previous[-1] / max(len(first), len(second))


def text_similarity(first: str, second: str, weights: MatchWeights = DEFAULT_WEIGHTS) -> float:
    """Blend of word-set Jaccard and Levenshtein similarity, in [0, 1].

    The Levenshtein part is only computed when both strings are short.
    """
    if not first or not second:
        return 0.0
    if first == second:
        return 1.0
    if not _words(first) or not _words(second):
        return 0.0
    jaccard = jaccard_similarity(first, second)
    lev = 0.0
    if len(first) < weights.levenshtein_max_length and len(second) < weights.levenshtein_max_length:
        lev = levenshtein_similarity(first, second)
    return jaccard * weights.jaccard_share + lev * weights.levenshtein_share


def is_containment(first: str, second: str) -> bool:
    """True when one non-empty string contains the other."""
    if not first or not second:
        return False
    return first in second or second in first


def containment_similarity(first: str, second: str) -> float:
    """Length ratio of the shorter to the longer string, if one contains the other."""
    if not is_containment(first, second):
        return 0.0
    return min(len(first), len(second)) / max(len(first), len(second))


def lines_similarity(
    stored: Sequence[str],
    current: Sequence[str],
    weights: MatchWeights = DEFAULT_WEIGHTS,
) -> float:
    """Compare two neighbour lists walking outward from the anchor.

    Both lists must be ordered nearest-first. Position ``i`` weighs
    ``1 / (i + 1)``; equal lines score the full weight, lines where one
    contains the other score ``containment_weight`` of it.
    """
    count = min(len(stored), len(current))
    if count == 0:
        return 0.0
    total = 0.0
    possible = 0.0
    for i in range(count):
        weight = 1.0 / (i + 1)
        possible += weight
        if stored[i] == current[i]:
            total += weight
        elif is_containment(stored[i], current[i]):
            total += weight * weights.containment_weight
    return total / possible


def context_similarity(
    stored: AnchorContext,
    current: AnchorContext,
    weights: MatchWeights = DEFAULT_WEIGHTS,
) -> float:
    """Similarity of two fingerprints' neighbour lines, in [0, 1].

    After-lines weigh more than before-lines. A malformed stored context
    scores zero.
    """
    if stored.is_malformed or current.is_malformed:
        return 0.0
    before = lines_similarity(
        (stored.before_lines or ())[::-1], (current.before_lines or ())[::-1], weights
    )
    after = lines_similarity(stored.after_lines or (), current.after_lines or (), weights)
    total_weight = weights.before_weight + weights.after_weight
    return (before * weights.before_weight + after * weights.after_weight) / total_weight
