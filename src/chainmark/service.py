"""High-level bookmark operations wiring store, matcher, coordinator and throttle."""

import re
from collections.abc import Sequence

from loguru import logger

from chainmark.config import (
    CONTEXT_WINDOW,
    EDIT_QUIET_PERIOD,
    REFRESH_INTERVAL,
    MatchWeights,
    SyncSettings,
)
from chainmark.core.anchor.context import get_anchor_context
from chainmark.core.anchor.matcher import AnchorMatcher
from chainmark.core.store.bookmark_store import BookmarkQuery, BookmarkStore
from chainmark.core.sync.coordinator import SyncCoordinator, SyncOutcome
from chainmark.core.throttle import ChangeThrottle
from chainmark.errors import DocumentNotFoundError
from chainmark.models.bookmark import SOURCE, AnchorContext, Bookmark, MirrorAnchor
from chainmark.models.document import TextEdit
from chainmark.protocols import (
    BookmarkPersistence,
    DocumentProvider,
    RefreshListener,
    ViewRegistry,
)


def unique_label(label: str, existing: Sequence[str | None]) -> str:
    """Return ``label``, or ``label (n)`` when it is already taken.

    ``n`` is one more than the highest number already used for the label.
    """
    taken = [
        e for e in existing if e is not None and (e == label or e.startswith(f"{label} ("))
    ]
    if not taken:
        return label
    pattern = re.compile(rf"^{re.escape(label)} \((\d+)\)$")
    numbers = [0]
    for existing_label in taken:
        match = pattern.match(existing_label)
        if match:
            numbers.append(int(match.group(1)))
    return f"{label} ({max(numbers) + 1})"


class BookmarkService:
    """Entry point for editors and the command line.

    Every change that is visible to the user requests a refresh, which the
    throttle rate-limits, and saves state when persistence is configured.
    """

    def __init__(
        self,
        documents: DocumentProvider,
        views: ViewRegistry,
        *,
        persistence: BookmarkPersistence | None = None,
        listener: RefreshListener | None = None,
        weights: MatchWeights | None = None,
        settings: SyncSettings | None = None,
        quiet_period: float = EDIT_QUIET_PERIOD,
        refresh_interval: float = REFRESH_INTERVAL,
    ) -> None:
        self.documents = documents
        self.views = views
        self.persistence = persistence
        self.listener = listener
        self.store = BookmarkStore()
        self.matcher = AnchorMatcher(weights)
        self.coordinator = SyncCoordinator(self.store, self.matcher, documents, views, settings)
        self.throttle = ChangeThrottle(
            self._process_edits,
            self._emit_refresh,
            quiet_period=quiet_period,
            refresh_interval=refresh_interval,
        )

    # --- State ---

    def load(self) -> int:
        """Load bookmarks from persistence; returns how many were loaded."""
        if self.persistence is None:
            return 0
        bookmarks, views = self.persistence.load()
        self.views.restore_views(views)
        self.store.clear()
        self.matcher.invalidate()
        for bookmark in bookmarks:
            self.store.add(bookmark)
        healed = self.coordinator.heal_links()
        if healed:
            logger.info(f"Repaired {healed} bookmark link(s) while loading")
        return len(bookmarks)

    def save(self) -> bool:
        if self.persistence is None:
            return False
        return bool(self.persistence.save(self.store.all(), self.views.all_views()))

    def _changed(self) -> None:
        self.save()
        self.throttle.request_refresh()

    def _emit_refresh(self) -> None:
        if self.listener is not None:
            self.listener.refresh()

    # --- Core operations ---

    def add_bookmark(self, bookmark: Bookmark) -> Bookmark:
        """Store a bookmark and mirror it to every related document."""
        stored = self.store.add(bookmark)
        if stored.is_source:
            self.coordinator.propagate_from_source(stored)
        else:
            self.coordinator.propagate_to_source(stored)
        self._changed()
        return self.store.get(stored.id) or stored

    def remove_bookmark(self, bookmark_id: str) -> Bookmark | None:
        removed = self.store.remove(bookmark_id)
        if removed is not None:
            self.matcher.invalidate(bookmark_id=bookmark_id)
            self.coordinator.heal_links()
            self._changed()
        return removed

    def find_bookmarks(self, criteria: BookmarkQuery | None = None) -> list[Bookmark]:
        return self.store.query(criteria or BookmarkQuery())

    def on_document_changed(self, document_id: str, edits: Sequence[TextEdit] = ()) -> None:
        """Queue a re-anchor pass for an edited document (debounced)."""
        if not self.store.for_document(document_id):
            return
        self.throttle.notify_edit(document_id, edits)

    def _process_edits(self, document_id: str, edits: list[TextEdit]) -> SyncOutcome:
        outcome = self.coordinator.on_document_edited(document_id, edits)
        if outcome.unresolved:
            logger.debug(f"{len(outcome.unresolved)} bookmark(s) in {document_id!r} not found")
        if outcome.changed:
            self._changed()
        return outcome

    def synchronize_to_mirrors(self, bookmark: Bookmark) -> list[Bookmark]:
        mirrors = self.coordinator.propagate_from_source(bookmark)
        self._changed()
        return mirrors

    def synchronize_from_mirror(self, bookmark: Bookmark) -> Bookmark | None:
        source = self.coordinator.propagate_to_source(bookmark)
        self._changed()
        return source

    def get_anchor_context(
        self, document_id: str, line_number: int, window_size: int = CONTEXT_WINDOW
    ) -> AnchorContext:
        """Fingerprint of a line; empty neighbour lists when it cannot be read."""
        snapshot = self.documents.read(document_id)
        lines = snapshot.lines if snapshot is not None else ()
        return get_anchor_context(lines, line_number, window_size)

    # --- Supplemented operations ---

    def bookmark_at(self, document_id: str, line_number: int) -> Bookmark | None:
        found = self.store.query(BookmarkQuery(document_id=document_id, line_number=line_number))
        return found[0] if found else None

    def toggle_bookmark(
        self, document_id: str, line_number: int, label: str | None = None
    ) -> Bookmark | None:
        """Remove the bookmark on a line, or create one there.

        Returns:
            The new bookmark, or None when an existing one was removed.

        Raises:
            DocumentNotFoundError: If the document cannot be read.
            ValueError: If the line is out of range.
        """
        existing = self.bookmark_at(document_id, line_number)
        if existing is not None:
            self.remove_bookmark_with_related(existing.id)
            return None

        snapshot = self.documents.read(document_id)
        if snapshot is None:
            raise DocumentNotFoundError(document_id)
        text = snapshot.line(line_number)
        if text is None:
            msg = f"Line {line_number} out of range for {document_id!r} ({snapshot.line_count})"
            raise ValueError(msg)

        source_uri = self.views.source_of(document_id)
        anchor = SOURCE if source_uri is None else MirrorAnchor(document_id)
        source_uri = source_uri or document_id
        if label:
            sources = self.store.query(BookmarkQuery(anchor=SOURCE, source_uri=source_uri))
            label = unique_label(label, [b.label for b in sources])

        bookmark = Bookmark(
            source_uri=source_uri,
            line_number=line_number,
            line_text=text,
            anchor=anchor,
            context=get_anchor_context(snapshot.lines, line_number),
            label=label or None,
        )
        logger.debug(f"Adding bookmark {bookmark.id} at {document_id}:{line_number}")
        return self.add_bookmark(bookmark)

    def open_bookmark(self, bookmark_id: str) -> tuple[Bookmark, str]:
        """Resolve a bookmark to a document and its current line text.

        The bookmark is re-anchored first if its document changed.

        Raises:
            KeyError: If there is no such bookmark.
            DocumentNotFoundError: If the bookmark's document is gone.
        """
        bookmark = self.store.get(bookmark_id)
        if bookmark is None:
            msg = f"No bookmark with id {bookmark_id!r}"
            raise KeyError(msg)
        snapshot = self.documents.read(bookmark.document_id)
        if snapshot is None:
            raise DocumentNotFoundError(bookmark.document_id)
        if snapshot.line(bookmark.line_number) != bookmark.line_text:
            self.reanchor(bookmark.document_id)
            bookmark = self.store.get(bookmark_id) or bookmark
        return bookmark, snapshot.line(bookmark.line_number) or ""

    def remove_bookmark_with_related(self, bookmark_id: str) -> list[Bookmark]:
        removed = self.store.remove_with_related(bookmark_id)
        for bookmark in removed:
            self.matcher.invalidate(bookmark_id=bookmark.id)
        if removed:
            self.coordinator.heal_links()
            self._changed()
        return removed

    def clear_document(self, document_id: str) -> list[Bookmark]:
        """Remove all bookmarks living in one document."""
        removed = self.store.clear_document(document_id)
        if removed:
            self.matcher.invalidate(document_id=document_id)
            self.coordinator.heal_links()
            self._changed()
        return removed

    def remove_source(self, source_uri: str) -> list[Bookmark]:
        """Forget a deleted source document and every bookmark derived from it."""
        removed = self.store.remove_for_source(source_uri)
        for bookmark in removed:
            self.matcher.invalidate(bookmark_id=bookmark.id)
        if removed:
            logger.info(f"Removed {len(removed)} bookmark(s) of {source_uri!r}")
            self._changed()
        return removed

    def reanchor(self, document_id: str) -> SyncOutcome:
        """Run a full re-anchor pass on a document right away."""
        return self._process_edits(document_id, [])

    def revert(self, document_id: str) -> SyncOutcome:
        """Restore bookmark text after the document's unsaved changes were discarded."""
        outcome = self.coordinator.revert(document_id)
        if outcome.changed:
            self._changed()
        return outcome

    def view_opened(self, view_id: str) -> SyncOutcome:
        """Synchronize the mirrors of a newly generated or regenerated view."""
        outcome = self.coordinator.synchronize_view(view_id)
        self._changed()
        return outcome

    def view_closed(self, view_id: str) -> list[Bookmark]:
        removed = self.coordinator.discard_view(view_id)
        self._changed()
        return removed
