"""Re-locate a bookmark in the current text of a document."""

from dataclasses import dataclass
from typing import Literal

from loguru import logger

from chainmark.config import CONTEXT_WINDOW, MatchWeights
from chainmark.core.anchor.context import (
    get_anchor_context,
    line_hash,
    occurrence_indices,
    relative_position,
)
from chainmark.core.anchor.similarity import (
    containment_similarity,
    context_similarity,
    jaccard_similarity,
    text_similarity,
)
from chainmark.models.bookmark import Bookmark
from chainmark.models.document import DocumentSnapshot

MatchMethod = Literal["cache", "occurrence", "exact", "fuzzy"]


@dataclass(frozen=True)
class MatchResult:
    """Where a bookmark was found and how confident the match is."""

    line_number: int
    score: float
    method: MatchMethod
    similarity: float = 1.0


@dataclass(frozen=True)
class _CacheEntry:
    content_hash: str
    version: object
    line_number: int


def _content_hash(bookmark: Bookmark) -> str:
    return line_hash(f"{bookmark.line_text}\x00{bookmark.context.occurrence_index}")


class AnchorMatcher:
    """Find the best current line for a bookmark's stored fingerprint.

    Rules are tried in order and the first one producing a candidate wins:
    cache, trivial reject, exact text (occurrence shortcut, then scoring),
    fuzzy fallback. Matching never raises; a miss returns None.
    """

    def __init__(self, weights: MatchWeights | None = None) -> None:
        self.weights = weights or MatchWeights()
        self._cache: dict[tuple[str, str], _CacheEntry] = {}

    def invalidate(self, *, bookmark_id: str | None = None, document_id: str | None = None) -> None:
        """Drop cached positions for a bookmark, a document, or everything."""
        if bookmark_id is None and document_id is None:
            self._cache.clear()
            return
        for key in list(self._cache):
            if (bookmark_id is None or key[0] == bookmark_id) and (
                document_id is None or key[1] == document_id
            ):
                del self._cache[key]

    def find_best_line(
        self,
        bookmark: Bookmark,
        snapshot: DocumentSnapshot,
        *,
        search_window: tuple[int, int] | None = None,
    ) -> MatchResult | None:
        """Locate ``bookmark`` in ``snapshot``.

        Args:
            bookmark: Bookmark whose stored text and context are matched.
            snapshot: Current text of the target document.
            search_window: Optional ``(start, end)`` line bounds (end exclusive)
                for the fuzzy pass. The exact pass always covers the whole
                document.

        Returns:
            The best match, or None when nothing is confident enough.
        """
        key = (bookmark.id, snapshot.document_id)
        content_hash = _content_hash(bookmark)

        cached = self._cache.get(key)
        if (
            cached is not None
            and cached.content_hash == content_hash
            and cached.version == snapshot.version
            and cached.line_number < snapshot.line_count
        ):
            return MatchResult(cached.line_number, score=0.0, method="cache")

        text = bookmark.line_text.strip()
        if len(text) < self.weights.min_text_length or not snapshot.lines:
            return None

        result = self._exact_pass(bookmark, text, snapshot)
        if result is None:
            result = self._fuzzy_pass(bookmark, text, snapshot, search_window)

        if result is None:
            logger.debug(f"No match for bookmark {bookmark.id} in {snapshot.document_id!r}")
            self._cache.pop(key, None)
            return None

        self._cache[key] = _CacheEntry(content_hash, snapshot.version, result.line_number)
        return result

    def _context_window(self, bookmark: Bookmark) -> int:
        ctx = bookmark.context
        if ctx.is_malformed:
            return CONTEXT_WINDOW
        return max(len(ctx.before_lines or ()), len(ctx.after_lines or ()), 1)

    def _context_bonus(self, bookmark: Bookmark, snapshot: DocumentSnapshot, line: int) -> float:
        current = get_anchor_context(snapshot.lines, line, self._context_window(bookmark))
        return context_similarity(bookmark.context, current, self.weights)

    def _position_delta(self, bookmark: Bookmark, snapshot: DocumentSnapshot, line: int) -> float:
        return abs(
            bookmark.context.relative_position - relative_position(line, snapshot.line_count)
        )

    def _exact_pass(
        self, bookmark: Bookmark, text: str, snapshot: DocumentSnapshot
    ) -> MatchResult | None:
        candidates = occurrence_indices(snapshot.lines, text)
        if not candidates:
            return None

        w = self.weights
        wanted = bookmark.context.occurrence_index
        if wanted is not None:
            for line, index in candidates.items():
                if index == wanted:
                    score = w.exact_base + w.occurrence_match_bonus
                    return MatchResult(line, score=score, method="occurrence")

        best_rank: tuple[float, int] | None = None
        best_line = -1
        for line, index in candidates.items():
            score = w.exact_base
            if wanted is not None:
                score -= abs(index - wanted) * w.occurrence_mismatch_penalty
            score += self._context_bonus(bookmark, snapshot, line) * w.context_weight
            score -= self._position_delta(bookmark, snapshot, line) * w.position_penalty
            rank = (score, -abs(line - bookmark.line_number))
            if best_rank is None or rank > best_rank:
                best_rank = rank
                best_line = line

        if best_rank is None:
            return None
        return MatchResult(best_line, score=best_rank[0], method="exact")

    def _fuzzy_pass(
        self,
        bookmark: Bookmark,
        text: str,
        snapshot: DocumentSnapshot,
        search_window: tuple[int, int] | None,
    ) -> MatchResult | None:
        w = self.weights
        start, end = search_window or (0, snapshot.line_count)
        start = max(0, start)
        end = min(snapshot.line_count, end)
        word_overlap_required = w.levenshtein_share <= w.fuzzy_threshold

        best_rank: tuple[float, float, int] | None = None
        best_line = -1
        for line in range(start, end):
            candidate = snapshot.lines[line].strip()
            if not candidate:
                continue
            similarity = 0.0
            if len(candidate) >= w.min_text_length:
                similarity = containment_similarity(text, candidate)
            # Without a shared word the blend cannot clear the threshold.
            if not word_overlap_required or jaccard_similarity(text, candidate) > 0.0:
                similarity = max(similarity, text_similarity(text, candidate, w))
            if similarity <= w.fuzzy_threshold:
                continue

            score = similarity * 100
            score += (
                self._context_bonus(bookmark, snapshot, line)
                * w.context_weight
                * w.fuzzy_context_scale
            )
            score -= (
                self._position_delta(bookmark, snapshot, line)
                * w.position_penalty
                * w.fuzzy_position_scale
            )
            rank = (score, similarity, -abs(line - bookmark.line_number))
            if best_rank is None or rank > best_rank:
                best_rank = rank
                best_line = line

        if best_rank is None:
            return None
        return MatchResult(best_line, score=best_rank[0], method="fuzzy", similarity=best_rank[1])
