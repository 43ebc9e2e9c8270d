"""Authoritative bookmark set with line-indexed lookups."""

from collections.abc import Iterator
from dataclasses import dataclass, replace

from loguru import logger

from chainmark.models.bookmark import Anchor, Bookmark, LinkState, MirrorAnchor, SourceAnchor

# uri -> line -> [bookmark ids]
_LineIndex = dict[str, dict[int, list[str]]]


@dataclass(frozen=True)
class BookmarkQuery:
    """Lookup criteria. Fields left as None are not filtered on.

    ``anchor`` selects by placement: ``SOURCE`` for canonical bookmarks,
    ``MirrorAnchor(doc)`` for mirrors in one view. ``document_id`` matches
    the document a bookmark lives in, whichever kind it is.
    """

    id: str | None = None
    source_uri: str | None = None
    anchor: Anchor | None = None
    document_id: str | None = None
    line_number: int | None = None
    linked_id: str | None = None
    occurrence_index: int | None = None
    line_text: str | None = None

    def matches(self, bookmark: Bookmark) -> bool:
        if self.id is not None and bookmark.id != self.id:
            return False
        if self.source_uri is not None and bookmark.source_uri != self.source_uri:
            return False
        if self.anchor is not None and bookmark.anchor != self.anchor:
            return False
        if self.document_id is not None and bookmark.document_id != self.document_id:
            return False
        if self.line_number is not None and bookmark.line_number != self.line_number:
            return False
        if self.linked_id is not None and bookmark.linked_id != self.linked_id:
            return False
        if (
            self.occurrence_index is not None
            and bookmark.context.occurrence_index != self.occurrence_index
        ):
            return False
        if self.line_text is not None and bookmark.line_text != self.line_text:
            return False
        return True


def _index_add(index: _LineIndex, uri: str, line: int, bookmark_id: str) -> None:
    ids = index.setdefault(uri, {}).setdefault(line, [])
    if bookmark_id not in ids:
        ids.append(bookmark_id)


def _index_remove(index: _LineIndex, uri: str, line: int, bookmark_id: str) -> None:
    line_map = index.get(uri)
    if not line_map:
        return
    ids = line_map.get(line)
    if not ids:
        return
    if bookmark_id in ids:
        ids.remove(bookmark_id)
    if not ids:
        del line_map[line]
    if not line_map:
        del index[uri]


class BookmarkStore:
    """In-memory bookmark set.

    Keeps three indices in step with the records:

    - mirror document -> line -> ids
    - source uri -> line -> ids (source bookmarks only)
    - source uri -> ids (every bookmark of that source, any anchor)
    """

    def __init__(self) -> None:
        self._bookmarks: dict[str, Bookmark] = {}
        self._mirror_lines: _LineIndex = {}
        self._source_lines: _LineIndex = {}
        self._by_source: dict[str, dict[str, None]] = {}

    def __len__(self) -> int:
        return len(self._bookmarks)

    def __contains__(self, bookmark_id: object) -> bool:
        return bookmark_id in self._bookmarks

    def __iter__(self) -> Iterator[Bookmark]:
        return iter(list(self._bookmarks.values()))

    def get(self, bookmark_id: str | None) -> Bookmark | None:
        if bookmark_id is None:
            return None
        return self._bookmarks.get(bookmark_id)

    def all(self) -> list[Bookmark]:
        return list(self._bookmarks.values())

    # --- Mutation ---

    def add(self, bookmark: Bookmark) -> Bookmark:
        """Insert or update a bookmark by id.

        An update without ``linked_id`` keeps the link of the stored record.
        Returns the record as stored.
        """
        existing = self._bookmarks.get(bookmark.id)
        if existing is not None:
            self._unindex(existing)
            if bookmark.linked_id is None and existing.linked_id is not None:
                bookmark = replace(bookmark, linked_id=existing.linked_id)
        self._bookmarks[bookmark.id] = bookmark
        self._index(bookmark)
        return bookmark

    def remove(self, bookmark_id: str) -> Bookmark | None:
        """Delete a bookmark; unknown ids are ignored.

        The partner's back-reference is cleared only if it still points here.
        """
        bookmark = self._bookmarks.pop(bookmark_id, None)
        if bookmark is None:
            return None
        self._unindex(bookmark)
        partner = self._bookmarks.get(bookmark.linked_id) if bookmark.linked_id else None
        if partner is not None and partner.linked_id == bookmark_id:
            self._bookmarks[partner.id] = replace(partner, linked_id=None)
        return bookmark

    def unlink(self, bookmark_id: str) -> None:
        """Drop the outgoing link of a bookmark."""
        bookmark = self._bookmarks.get(bookmark_id)
        if bookmark is not None and bookmark.linked_id is not None:
            self._bookmarks[bookmark_id] = replace(bookmark, linked_id=None)

    def link(self, first_id: str, second_id: str) -> None:
        """Point two bookmarks at each other."""
        first = self._bookmarks.get(first_id)
        second = self._bookmarks.get(second_id)
        if first is None or second is None:
            logger.debug(f"Cannot link {first_id!r} <-> {second_id!r}: missing bookmark")
            return
        if first.linked_id != second_id:
            self._bookmarks[first_id] = replace(first, linked_id=second_id)
        if second.linked_id != first_id:
            self._bookmarks[second_id] = replace(second, linked_id=first_id)

    def remove_with_related(self, bookmark_id: str) -> list[Bookmark]:
        """Remove a bookmark together with its counterparts.

        Counterparts are bookmarks linked to it, the one it links to, and
        bookmarks of the same source with identical text and occurrence index.
        """
        root = self._bookmarks.get(bookmark_id)
        if root is None:
            return []
        related = [
            b
            for b in self.for_source(root.source_uri)
            if b.id != root.id
            and (
                b.linked_id == root.id
                or b.id == root.linked_id
                or (
                    b.line_text == root.line_text
                    and b.context.occurrence_index == root.context.occurrence_index
                )
            )
        ]
        removed = [b for b in (self.remove(b.id) for b in related) if b is not None]
        own = self.remove(root.id)
        if own is not None:
            removed.append(own)
        return removed

    def remove_for_source(self, source_uri: str) -> list[Bookmark]:
        """Purge every bookmark (source and mirrors) of a source document."""
        return [b for b in (self.remove(b.id) for b in self.for_source(source_uri)) if b]

    def clear_document(self, document_id: str) -> list[Bookmark]:
        """Remove every bookmark living in one document."""
        return [b for b in (self.remove(b.id) for b in self.for_document(document_id)) if b]

    def clear(self) -> None:
        self._bookmarks.clear()
        self._mirror_lines.clear()
        self._source_lines.clear()
        self._by_source.clear()

    # --- Lookup ---

    def bookmarks_at_line(self, document_id: str, line_number: int) -> list[Bookmark]:
        """Mirrors at a line of a derived document."""
        return self._resolve(self._mirror_lines.get(document_id, {}).get(line_number, []))

    def source_bookmarks_at_line(self, source_uri: str, line_number: int) -> list[Bookmark]:
        return self._resolve(self._source_lines.get(source_uri, {}).get(line_number, []))

    def has_bookmark_at_line(self, document_id: str, line_number: int) -> bool:
        return bool(
            self._mirror_lines.get(document_id, {}).get(line_number)
            or self._source_lines.get(document_id, {}).get(line_number)
        )

    def for_source(self, source_uri: str) -> list[Bookmark]:
        """Every bookmark (source and mirrors) belonging to a source."""
        return self._resolve(list(self._by_source.get(source_uri, {})))

    def for_document(self, document_id: str) -> list[Bookmark]:
        """Bookmarks living in a document, as source or as mirror."""
        mirrors = [
            bid for ids in self._mirror_lines.get(document_id, {}).values() for bid in ids
        ]
        sources = [
            bid for ids in self._source_lines.get(document_id, {}).values() for bid in ids
        ]
        return self._resolve(sources + mirrors)

    def query(self, criteria: BookmarkQuery) -> list[Bookmark]:
        """Find bookmarks matching all given criteria.

        Uses the id, line and source indices when the criteria allow it and
        falls back to a full scan otherwise.
        """
        if criteria.id is not None:
            found = self._bookmarks.get(criteria.id)
            return [found] if found is not None and criteria.matches(found) else []

        candidates: list[Bookmark]
        if criteria.line_number is not None and isinstance(criteria.anchor, MirrorAnchor):
            candidates = self.bookmarks_at_line(criteria.anchor.document_id, criteria.line_number)
        elif (
            criteria.line_number is not None
            and isinstance(criteria.anchor, SourceAnchor)
            and criteria.source_uri is not None
        ):
            candidates = self.source_bookmarks_at_line(criteria.source_uri, criteria.line_number)
        elif criteria.line_number is not None and criteria.document_id is not None:
            candidates = self.bookmarks_at_line(
                criteria.document_id, criteria.line_number
            ) + self.source_bookmarks_at_line(criteria.document_id, criteria.line_number)
        elif criteria.source_uri is not None:
            candidates = self.for_source(criteria.source_uri)
        elif criteria.document_id is not None:
            candidates = self.for_document(criteria.document_id)
        else:
            candidates = list(self._bookmarks.values())

        return [b for b in candidates if criteria.matches(b)]

    # --- Links ---

    def link_state(self, first_id: str, second_id: str) -> LinkState:
        first = self._bookmarks.get(first_id)
        second = self._bookmarks.get(second_id)
        forward = first is not None and first.linked_id == second_id
        backward = second is not None and second.linked_id == first_id
        if forward and backward:
            return LinkState.LINKED
        if forward or backward:
            return LinkState.PENDING_LINK
        return LinkState.UNLINKED

    def asymmetric_links(self) -> list[tuple[Bookmark, Bookmark | None]]:
        """Return (bookmark, target) pairs whose link is not reciprocated.

        A mirror pointing at a source whose primary link names another live
        mirror of the same source is a normal multi-view state and is not
        reported. ``target`` is None for dangling links.
        """
        result: list[tuple[Bookmark, Bookmark | None]] = []
        for bookmark in self._bookmarks.values():
            if bookmark.linked_id is None:
                continue
            target = self._bookmarks.get(bookmark.linked_id)
            if target is None:
                result.append((bookmark, None))
                continue
            if target.linked_id == bookmark.id:
                continue
            if not bookmark.is_source and target.is_source:
                primary = self._bookmarks.get(target.linked_id) if target.linked_id else None
                if primary is not None and primary.linked_id == target.id:
                    continue
            result.append((bookmark, target))
        return result

    # --- Internals ---

    def _resolve(self, ids: list[str]) -> list[Bookmark]:
        return [self._bookmarks[bid] for bid in ids if bid in self._bookmarks]

    def _index(self, bookmark: Bookmark) -> None:
        if isinstance(bookmark.anchor, MirrorAnchor):
            _index_add(
                self._mirror_lines, bookmark.anchor.document_id, bookmark.line_number, bookmark.id
            )
        else:
            _index_add(self._source_lines, bookmark.source_uri, bookmark.line_number, bookmark.id)
        self._by_source.setdefault(bookmark.source_uri, {})[bookmark.id] = None

    def _unindex(self, bookmark: Bookmark) -> None:
        if isinstance(bookmark.anchor, MirrorAnchor):
            _index_remove(
                self._mirror_lines, bookmark.anchor.document_id, bookmark.line_number, bookmark.id
            )
        else:
            _index_remove(
                self._source_lines, bookmark.source_uri, bookmark.line_number, bookmark.id
            )
        ids = self._by_source.get(bookmark.source_uri)
        if ids is not None:
            ids.pop(bookmark.id, None)
            if not ids:
                del self._by_source[bookmark.source_uri]
