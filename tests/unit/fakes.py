"""In-memory fakes and builders for the bookmark engine's collaborators."""

import asyncio
from collections.abc import Callable, Iterable, Sequence
from typing import Any

from chainmark.core.anchor.context import get_anchor_context
from chainmark.models.bookmark import SOURCE, Anchor, Bookmark
from chainmark.models.document import DerivedView, DocumentSnapshot


LOG_LINES = ["INFO start", "ERROR fail", "INFO end"]


def capture(
    document_id: str,
    lines: Sequence[str],
    line_number: int,
    *,
    anchor: Anchor = SOURCE,
    source_uri: str | None = None,
    **kwargs: Any,
) -> Bookmark:
    """Bookmark a line the way an editor would, fingerprint included."""
    return Bookmark(
        source_uri=source_uri or document_id,
        line_number=line_number,
        line_text=lines[line_number].strip(),
        anchor=anchor,
        context=get_anchor_context(lines, line_number),
        **kwargs,
    )


def snapshot(
    lines: Sequence[str], *, document_id: str = "doc", version: object = 0
) -> DocumentSnapshot:
    return DocumentSnapshot(document_id, tuple(lines), version=version)


class FakeDocuments:
    """In-memory DocumentProvider and ViewRegistry.

    Every ``set_lines`` bumps the document version. Documents listed in
    ``unreadable`` read as missing; documents in ``bump_after_read`` change
    version right after each read, simulating an edit racing a pass.
    """

    def __init__(self) -> None:
        self.lines: dict[str, list[str]] = {}
        self.saved: dict[str, list[str]] = {}
        self.versions: dict[str, int] = {}
        self.views: dict[str, DerivedView] = {}
        self.unreadable: set[str] = set()
        self.bump_after_read: set[str] = set()
        self.reads: list[str] = []

    def set_lines(self, document_id: str, lines: list[str], *, saved: bool = True) -> None:
        self.lines[document_id] = list(lines)
        if saved:
            self.saved[document_id] = list(lines)
        self.versions[document_id] = self.versions.get(document_id, 0) + 1

    def add_view(self, view_id: str, source_uri: str, lines: list[str]) -> None:
        self.views[view_id] = DerivedView(view_id, source_uri, (), tuple(lines))
        self.set_lines(view_id, lines)

    def remove_view(self, view_id: str) -> None:
        self.views.pop(view_id, None)
        self.lines.pop(view_id, None)

    # --- DocumentProvider ---

    def read(self, document_id: str) -> DocumentSnapshot | None:
        self.reads.append(document_id)
        if document_id in self.unreadable or document_id not in self.lines:
            return None
        saved = self.saved.get(document_id)
        snapshot = DocumentSnapshot(
            document_id,
            tuple(self.lines[document_id]),
            version=self.versions[document_id],
            saved_lines=tuple(saved) if saved is not None else None,
        )
        if document_id in self.bump_after_read:
            self.versions[document_id] += 1
        return snapshot

    def version(self, document_id: str) -> object | None:
        if document_id in self.unreadable:
            return None
        return self.versions.get(document_id)

    # --- ViewRegistry ---

    def derived_documents(self, source_uri: str) -> list[str]:
        return [v.document_id for v in self.views.values() if v.source_uri == source_uri]

    def source_of(self, document_id: str) -> str | None:
        view = self.views.get(document_id)
        return view.source_uri if view is not None else None

    def all_views(self) -> list[DerivedView]:
        return list(self.views.values())

    def restore_views(self, views: Iterable[DerivedView]) -> None:
        for view in views:
            self.add_view(view.document_id, view.source_uri, list(view.lines))


class FakeRefresh:
    """RefreshListener that counts calls."""

    def __init__(self) -> None:
        self.count = 0

    def refresh(self) -> None:
        self.count += 1


class FakePersistence:
    """BookmarkPersistence keeping the last saved state in memory."""

    def __init__(
        self,
        bookmarks: list[Bookmark] | None = None,
        views: list[DerivedView] | None = None,
    ) -> None:
        self.bookmarks = list(bookmarks or [])
        self.views = list(views or [])
        self.saves = 0

    def load(self) -> tuple[list[Bookmark], list[DerivedView]]:
        return list(self.bookmarks), list(self.views)

    def save(self, bookmarks: Iterable[Bookmark], views: Iterable[DerivedView]) -> bool:
        self.bookmarks = list(bookmarks)
        self.views = list(views)
        self.saves += 1
        return True


async def wait_until(condition: Callable[[], object], timeout: float = 2.0) -> None:
    """Yield to the event loop until ``condition()`` is truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        assert loop.time() < deadline, "condition not met before timeout"
        await asyncio.sleep(0.005)
