"""Keep source bookmarks and their mirrors consistent across documents."""

from collections.abc import Collection, Iterable, Sequence
from dataclasses import dataclass, field, replace

from loguru import logger

from chainmark.config import SyncSettings
from chainmark.core.anchor.context import get_anchor_context, occurrence_index
from chainmark.core.anchor.matcher import AnchorMatcher
from chainmark.core.anchor.similarity import text_similarity
from chainmark.core.store.bookmark_store import BookmarkQuery, BookmarkStore
from chainmark.core.sync.edits import predicted_lines
from chainmark.errors import StaleDocumentError
from chainmark.models.bookmark import SOURCE, AnchorContext, Bookmark, MirrorAnchor
from chainmark.models.document import DocumentSnapshot, TextEdit
from chainmark.protocols import DocumentProvider, ViewRegistry


@dataclass
class SyncOutcome:
    """What a synchronization pass did to the bookmarks of one document."""

    document_id: str
    moved: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    created: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)
    missing_document: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.moved or self.updated or self.created or self.removed)


@dataclass(frozen=True)
class _Update:
    old: Bookmark
    new: Bookmark

    @property
    def moved(self) -> bool:
        return self.old.line_number != self.new.line_number


class SyncCoordinator:
    """Propagates bookmark changes between a source and its derived views.

    The coordinator owns no state of its own besides its collaborators: the
    store holds the records, the matcher locates them, the provider hands
    out document text and the registry knows which views exist.
    """

    def __init__(
        self,
        store: BookmarkStore,
        matcher: AnchorMatcher,
        documents: DocumentProvider,
        views: ViewRegistry,
        settings: SyncSettings | None = None,
    ) -> None:
        self.store = store
        self.matcher = matcher
        self.documents = documents
        self.views = views
        self.settings = settings or SyncSettings()

    # --- Source -> mirrors ---

    def propagate_from_source(
        self, source: Bookmark, *, except_documents: Collection[str] = ()
    ) -> list[Bookmark]:
        """Make sure every derived view of the source holds a linked mirror.

        Existing linked mirrors are re-anchored, an unlinked bookmark at the
        matched line is adopted, otherwise a new mirror is created. Running
        this twice in a row changes nothing the second time.

        Returns:
            Mirrors that exist after the pass, in derived-document order.
        """
        source = self.store.get(source.id) or source
        if not source.is_source:
            logger.debug(f"Bookmark {source.id} is a mirror; nothing to fan out")
            return []

        mirrors: list[Bookmark] = []
        for document_id in self.views.derived_documents(source.source_uri):
            if document_id in except_documents:
                continue
            snapshot = self._read(document_id)
            if snapshot is None:
                continue
            mirror = self._mirror_for(source, snapshot)
            if mirror is not None:
                mirrors.append(mirror)
        self._heal_primary_link(source.id)
        return mirrors

    def _mirror_for(
        self, source: Bookmark, snapshot: DocumentSnapshot, *, drop_missing: bool = False
    ) -> Bookmark | None:
        """Find, adopt or create the mirror of ``source`` in one view.

        With ``drop_missing`` a linked mirror whose source text is gone from
        the view is removed instead of being left in place.
        """
        anchor = MirrorAnchor(snapshot.document_id)
        linked = self.store.query(BookmarkQuery(anchor=anchor, linked_id=source.id))
        if linked:
            for duplicate in linked[1:]:
                logger.debug(f"Removing duplicate mirror {duplicate.id} of {source.id}")
                self.store.remove(duplicate.id)
                self.matcher.invalidate(bookmark_id=duplicate.id)
            refreshed = self._refresh_mirror(source, linked[0], snapshot)
            if refreshed is not None:
                return refreshed
            if drop_missing:
                self.store.remove(linked[0].id)
                self.matcher.invalidate(bookmark_id=linked[0].id)
                logger.debug(f"Removed mirror {linked[0].id}; source line left the view")
                return None
            return linked[0]

        match = self.matcher.find_best_line(
            source, snapshot, search_window=self._fuzzy_window(source, snapshot)
        )
        if match is None:
            logger.debug(f"Source {source.id} not present in view {snapshot.document_id!r}")
            return None

        adopted = self._adoptable(
            self.store.bookmarks_at_line(snapshot.document_id, match.line_number),
            snapshot,
            match.line_number,
            source.id,
        )
        if adopted is not None:
            mirror = replace(
                self._capture(adopted, snapshot, match.line_number), linked_id=source.id
            )
            if mirror.label is None and source.label is not None:
                mirror = replace(mirror, label=source.label)
            mirror = self.store.add(mirror)
            logger.debug(f"Adopted {mirror.id} as mirror of {source.id}")
            return mirror

        mirror = self.store.add(
            Bookmark(
                source_uri=source.source_uri,
                line_number=match.line_number,
                line_text=snapshot.line(match.line_number) or source.line_text,
                anchor=anchor,
                context=self._context(snapshot, match.line_number),
                label=source.label,
                linked_id=source.id,
            )
        )
        logger.debug(
            f"Created mirror {mirror.id} of {source.id} at "
            f"{snapshot.document_id}:{match.line_number}"
        )
        return mirror

    def _refresh_mirror(
        self, source: Bookmark, mirror: Bookmark, snapshot: DocumentSnapshot
    ) -> Bookmark | None:
        """Re-anchor a linked mirror on its source's text; None if not found."""
        current = snapshot.line(mirror.line_number)
        if current is not None and current == mirror.line_text == source.line_text:
            if source.label is not None and mirror.label != source.label:
                return self.store.add(replace(mirror, label=source.label))
            return mirror

        match = self.matcher.find_best_line(
            source, snapshot, search_window=self._fuzzy_window(mirror, snapshot)
        )
        if match is None:
            logger.debug(f"Source text of mirror {mirror.id} not found in {mirror.document_id!r}")
            return None
        updated = self._capture(mirror, snapshot, match.line_number)
        if source.label is not None:
            updated = replace(updated, label=source.label)
        if updated == mirror:
            return mirror
        return self.store.add(updated)

    def _adoptable(
        self,
        candidates: Iterable[Bookmark],
        snapshot: DocumentSnapshot,
        line_number: int,
        partner_id: str,
    ) -> Bookmark | None:
        """Pick a bookmark at a matched line that may be re-linked to ``partner_id``.

        Its occurrence index must agree with the line it sits on, and it must
        not be linked to another live partner.
        """
        expected = occurrence_index(snapshot.lines, line_number)
        for candidate in candidates:
            if candidate.context.occurrence_index != expected:
                continue
            if candidate.linked_id in (None, partner_id) or candidate.linked_id not in self.store:
                return candidate
        return None

    # --- Mirror -> source ---

    def propagate_to_source(self, mirror: Bookmark) -> Bookmark | None:
        """Find or create the source of a mirror, then fan out to other views.

        When the mirror's text diverged from its source's, the source is
        re-located in the source document first.

        Returns:
            The source bookmark, or None when it could not be located.
        """
        mirror = self.store.get(mirror.id) or mirror
        if mirror.is_source:
            return mirror

        source = self._source_for(mirror)
        if source is None:
            source = self._locate_source(mirror)
            if source is None:
                return None
        else:
            if mirror.linked_id != source.id:
                mirror = self.store.add(replace(mirror, linked_id=source.id))
            if mirror.line_text != source.line_text:
                source = self._relocate_source(source, mirror)

        self._heal_primary_link(source.id, prefer=mirror.id)
        self.propagate_from_source(source, except_documents={mirror.document_id})
        return self.store.get(source.id)

    def _source_for(self, mirror: Bookmark) -> Bookmark | None:
        linked = self.store.get(mirror.linked_id)
        if linked is not None and linked.is_source and linked.source_uri == mirror.source_uri:
            return linked

        pointing = self.store.query(
            BookmarkQuery(anchor=SOURCE, source_uri=mirror.source_uri, linked_id=mirror.id)
        )
        return pointing[0] if pointing else None

    def _locate_source(self, mirror: Bookmark) -> Bookmark | None:
        """Find the source line of an unlinked mirror, adopting or creating its source.

        A source already at that line is reused unless it has another mirror
        in the mirror's own view; the mirror is then a duplicate and stays
        unlinked.
        """
        snapshot = self._read(mirror.source_uri)
        if snapshot is None:
            return None
        match = self.matcher.find_best_line(
            mirror, snapshot, search_window=self._fuzzy_window(mirror, snapshot)
        )
        if match is None:
            logger.debug(f"Mirror {mirror.id} has no counterpart in {mirror.source_uri!r}")
            return None

        expected = occurrence_index(snapshot.lines, match.line_number)
        candidates = [
            b
            for b in self.store.source_bookmarks_at_line(mirror.source_uri, match.line_number)
            if b.context.occurrence_index == expected
        ]
        adopted = next((c for c in candidates if not self._mirrored_in(c, mirror)), None)
        if adopted is None and candidates:
            logger.debug(
                f"Source {candidates[0].id} already mirrored in {mirror.document_id!r}; "
                f"{mirror.id} left unlinked"
            )
            return None
        if adopted is not None:
            source = self._capture(adopted, snapshot, match.line_number)
            if source.label is None and mirror.label is not None:
                source = replace(source, label=mirror.label)
            source = self.store.add(source)
        else:
            source = self.store.add(
                Bookmark(
                    source_uri=mirror.source_uri,
                    line_number=match.line_number,
                    line_text=snapshot.line(match.line_number) or mirror.line_text,
                    context=self._context(snapshot, match.line_number),
                    label=mirror.label,
                )
            )
            logger.debug(f"Created source {source.id} for mirror {mirror.id}")
        if mirror.id in self.store:
            self.store.add(replace(mirror, linked_id=source.id))
        return source

    def _mirrored_in(self, source: Bookmark, mirror: Bookmark) -> bool:
        """True if ``source`` has a mirror other than ``mirror`` in the same view."""
        return any(
            b.id != mirror.id
            for b in self.store.query(
                BookmarkQuery(anchor=MirrorAnchor(mirror.document_id), linked_id=source.id)
            )
        )

    def _relocate_source(self, source: Bookmark, mirror: Bookmark) -> Bookmark:
        snapshot = self._read(source.source_uri)
        if snapshot is None:
            return source
        match = self.matcher.find_best_line(
            mirror, snapshot, search_window=self._fuzzy_window(source, snapshot)
        )
        if match is None:
            logger.debug(f"Source {source.id} kept; mirror text not found in source")
            return source
        updated = self._capture(source, snapshot, match.line_number)
        return source if updated == source else self.store.add(updated)

    # --- Edits ---

    def on_document_edited(
        self, document_id: str, edits: Sequence[TextEdit] = ()
    ) -> SyncOutcome:
        """Re-anchor the bookmarks of an edited document and propagate moves.

        A single in-line edit that keeps the line recognisable updates the
        bookmark on that line in place. Otherwise each bookmark is tried at
        its predicted shifted line, then re-located by the matcher.

        All updates are computed before any is applied. If the document
        version changed in between, nothing is applied.

        Raises:
            StaleDocumentError: The document changed during the pass.
        """
        outcome = SyncOutcome(document_id)
        bookmarks = self.store.for_document(document_id)
        if not bookmarks:
            return outcome
        snapshot = self._read(document_id)
        if snapshot is None:
            outcome.missing_document = True
            return outcome

        edits = list(edits)
        updates: list[_Update] | None = None
        if len(edits) == 1 and edits[0].is_single_line:
            updates = self._in_place(bookmarks, edits[0], snapshot)
        if updates is None:
            updates = []
            for bookmark in bookmarks:
                new = self._relocate(bookmark, snapshot, edits)
                if new is None:
                    outcome.unresolved.append(bookmark.id)
                elif new != bookmark:
                    updates.append(_Update(bookmark, new))

        self._check_version(snapshot)
        self._apply(updates, outcome)
        return outcome

    def _in_place(
        self, bookmarks: Sequence[Bookmark], edit: TextEdit, snapshot: DocumentSnapshot
    ) -> list[_Update] | None:
        """Updates for an edit confined to one line, or None to fall back."""
        text = snapshot.line(edit.start_line)
        if text is None:
            return None
        on_line = [b for b in bookmarks if b.line_number == edit.start_line]
        if not on_line:
            return []
        updates: list[_Update] = []
        for bookmark in on_line:
            if bookmark.line_text == text:
                continue
            similarity = text_similarity(bookmark.line_text, text, self.matcher.weights)
            if similarity < self.settings.in_place_similarity:
                return None
            updates.append(_Update(bookmark, self._capture(bookmark, snapshot, edit.start_line)))
        return updates

    def _relocate(
        self, bookmark: Bookmark, snapshot: DocumentSnapshot, edits: Sequence[TextEdit]
    ) -> Bookmark | None:
        """Return the bookmark at its current position, or None when it is lost."""
        if edits:
            for line in predicted_lines(bookmark.line_number, edits):
                if snapshot.line(line) == bookmark.line_text:
                    return self._capture(bookmark, snapshot, line)
        elif (
            snapshot.line(bookmark.line_number) == bookmark.line_text
            and occurrence_index(snapshot.lines, bookmark.line_number)
            == bookmark.context.occurrence_index
        ):
            return self._capture(bookmark, snapshot, bookmark.line_number)

        match = self.matcher.find_best_line(
            bookmark, snapshot, search_window=self._fuzzy_window(bookmark, snapshot)
        )
        if match is None:
            return None
        return self._capture(bookmark, snapshot, match.line_number)

    def _check_version(self, snapshot: DocumentSnapshot) -> None:
        actual = self.documents.version(snapshot.document_id)
        if actual != snapshot.version:
            raise StaleDocumentError(snapshot.document_id, snapshot.version, actual)

    def _apply(self, updates: Sequence[_Update], outcome: SyncOutcome) -> None:
        for update in updates:
            stored = self.store.add(update.new)
            self.matcher.invalidate(bookmark_id=stored.id)
            if update.moved:
                outcome.moved.append(stored.id)
            else:
                outcome.updated.append(stored.id)

        for update in updates:
            bookmark = self.store.get(update.new.id)
            if bookmark is None:
                continue
            if bookmark.is_source:
                self.propagate_from_source(bookmark)
            else:
                self.propagate_to_source(bookmark)

    # --- Save / revert ---

    def revert(self, document_id: str) -> SyncOutcome:
        """Restore bookmark text to the last-saved content after a revert.

        Only bookmarks whose text diverges from both the current and the
        saved line are touched.
        """
        outcome = SyncOutcome(document_id)
        snapshot = self._read(document_id)
        if snapshot is None:
            outcome.missing_document = True
            return outcome
        saved = snapshot.saved_lines if snapshot.saved_lines is not None else snapshot.lines

        updates: list[_Update] = []
        for bookmark in self.store.for_document(document_id):
            if not 0 <= bookmark.line_number < len(saved):
                continue
            saved_text = saved[bookmark.line_number].strip()
            current = snapshot.line(bookmark.line_number)
            if bookmark.line_text in (current, saved_text):
                continue
            restored = replace(
                bookmark,
                line_text=saved_text,
                context=get_anchor_context(
                    saved, bookmark.line_number, self.settings.context_window
                ),
            )
            new = self._relocate(restored, snapshot, ()) or restored
            updates.append(_Update(bookmark, new))

        self._check_version(snapshot)
        self._apply(updates, outcome)
        return outcome

    # --- Views ---

    def synchronize_view(self, view_id: str) -> SyncOutcome:
        """Bring the mirrors of a (re)generated view in line with its source.

        Sources present in the view get a mirror. Mirrors whose source line
        no longer appears in the view are removed; mirrors with no source
        get one.
        """
        outcome = SyncOutcome(view_id)
        source_uri = self.views.source_of(view_id)
        if source_uri is None:
            logger.debug(f"{view_id!r} is not a derived view")
            return outcome
        snapshot = self._read(view_id)
        if snapshot is None:
            outcome.missing_document = True
            return outcome

        before = {b.id: b for b in self.store.for_document(view_id)}
        for source in self.store.query(BookmarkQuery(anchor=SOURCE, source_uri=source_uri)):
            self._mirror_for(source, snapshot, drop_missing=True)
            self._heal_primary_link(source.id)

        for mirror in self.store.for_document(view_id):
            linked = self.store.get(mirror.linked_id)
            if linked is None or not linked.is_source:
                if self.propagate_to_source(mirror) is None:
                    outcome.unresolved.append(mirror.id)

        after = self.store.for_document(view_id)
        remaining = {b.id for b in after}
        outcome.removed.extend(bid for bid in before if bid not in remaining)
        for bookmark in after:
            previous = before.get(bookmark.id)
            if previous is None:
                outcome.created.append(bookmark.id)
            elif previous.line_number != bookmark.line_number:
                outcome.moved.append(bookmark.id)
            elif previous != bookmark:
                outcome.updated.append(bookmark.id)
        self.matcher.invalidate(document_id=view_id)
        return outcome

    def discard_view(self, view_id: str) -> list[Bookmark]:
        """Drop the mirrors of a closed view and re-point affected sources."""
        removed = self.store.clear_document(view_id)
        self.matcher.invalidate(document_id=view_id)
        for source_id in {b.linked_id for b in removed if b.linked_id}:
            self._heal_primary_link(source_id)
        if removed:
            logger.debug(f"Discarded {len(removed)} mirror(s) of {view_id!r}")
        return removed

    # --- Links ---

    def heal_links(self) -> int:
        """Repair links that are not reciprocated. Returns the number fixed."""
        fixed = 0
        for bookmark, target in self.store.asymmetric_links():
            current = self.store.get(bookmark.id)
            if current is None or current.linked_id != bookmark.linked_id:
                continue
            if target is None or current.is_source == target.is_source:
                self.store.unlink(current.id)
            elif target.is_source:
                self._heal_primary_link(target.id, prefer=current.id)
            elif target.linked_id is None:
                self.store.link(current.id, target.id)
            else:
                self.store.unlink(current.id)
                self._heal_primary_link(current.id)
            fixed += 1
        if fixed:
            logger.debug(f"Healed {fixed} asymmetric link(s)")
        return fixed

    def _heal_primary_link(self, source_id: str, prefer: str | None = None) -> None:
        """Point a source at a live mirror that points back at it.

        The current primary mirror is kept while it is valid. Otherwise
        ``prefer`` is used if it qualifies, else the first mirror found.
        """
        source = self.store.get(source_id)
        if source is None or not source.is_source:
            return
        primary = self.store.get(source.linked_id)
        if primary is not None and not primary.is_source and primary.linked_id == source.id:
            return

        mirrors = [
            b
            for b in self.store.query(
                BookmarkQuery(source_uri=source.source_uri, linked_id=source.id)
            )
            if not b.is_source
        ]
        if not mirrors:
            if source.linked_id is not None:
                self.store.unlink(source.id)
            return
        chosen = next((m for m in mirrors if m.id == prefer), mirrors[0])
        self.store.link(source.id, chosen.id)

    # --- Helpers ---

    def _read(self, document_id: str) -> DocumentSnapshot | None:
        snapshot = self.documents.read(document_id)
        if snapshot is None:
            logger.warning(f"Cannot read {document_id!r}; bookmarks left unchanged")
        return snapshot

    def _context(self, snapshot: DocumentSnapshot, line_number: int) -> AnchorContext:
        return get_anchor_context(snapshot.lines, line_number, self.settings.context_window)

    def _capture(
        self, bookmark: Bookmark, snapshot: DocumentSnapshot, line_number: int
    ) -> Bookmark:
        return replace(
            bookmark,
            line_number=line_number,
            line_text=snapshot.line(line_number) or bookmark.line_text,
            context=self._context(snapshot, line_number),
        )

    def _fuzzy_window(
        self, bookmark: Bookmark, snapshot: DocumentSnapshot
    ) -> tuple[int, int] | None:
        if snapshot.line_count <= self.settings.large_document_lines:
            return None
        radius = self.settings.fuzzy_search_radius
        return (bookmark.line_number - radius, bookmark.line_number + radius + 1)
