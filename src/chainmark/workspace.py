"""Files on disk plus in-memory derived views, as seen by the bookmark engine."""

from collections.abc import Iterable, Sequence
from dataclasses import replace
from pathlib import Path

from loguru import logger

from chainmark.core.search.chain import ChainSearcher, normalize_chain, view_id_for, view_name
from chainmark.errors import DocumentNotFoundError
from chainmark.models.document import ChainQuery, DerivedView, DocumentSnapshot, TextEdit

VIEW_PREFIX = "view:"


def is_view_id(document_id: str) -> bool:
    return document_id.startswith(VIEW_PREFIX)


def _apply_edit(lines: Sequence[str], edit: TextEdit) -> list[str]:
    """Replace the text from the start of ``start_line`` to the start of ``end_line``."""
    full = "\n".join(lines)
    start = sum(len(line) + 1 for line in lines[: edit.start_line])
    end = sum(len(line) + 1 for line in lines[: edit.end_line])
    start = min(start, len(full))
    if edit.end_line >= len(lines) and start > 0 and not edit.text:
        # Removing the last lines also removes the newline before them.
        start -= 1
    end = min(end, len(full))
    return (full[:start] + edit.text + full[end:]).split("\n")


class Workspace:
    """Source documents rooted at a directory, with unsaved buffers and views.

    Implements both ``DocumentProvider`` and ``ViewRegistry``. Source
    documents are identified by their absolute POSIX path; views by an
    opaque ``view:`` id derived from their source and chain.

    Unsaved edits live in per-document buffers. ``read`` reports the buffer
    when there is one and the file content as ``saved_lines``.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser().resolve()
        self.searcher = ChainSearcher(self)
        self._buffers: dict[str, list[str]] = {}
        self._generations: dict[str, int] = {}
        self._views: dict[str, DerivedView] = {}

    def document_id(self, path: str | Path) -> str:
        """Normalize a path (relative paths are taken from the root)."""
        if isinstance(path, str) and is_view_id(path):
            return path
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = self.root / candidate
        return candidate.resolve().as_posix()

    def display_name(self, document_id: str) -> str:
        view = self._views.get(document_id)
        if view is not None:
            return view_name(self.display_name(view.source_uri), view.chain)
        try:
            return Path(document_id).relative_to(self.root).as_posix()
        except ValueError:
            return document_id

    # --- DocumentProvider ---

    def read(self, document_id: str) -> DocumentSnapshot | None:
        view = self._views.get(document_id)
        if view is not None:
            return DocumentSnapshot(document_id, view.lines, version=view.version)
        if is_view_id(document_id):
            return None

        saved = self._read_file(document_id)
        buffer = self._buffers.get(document_id)
        if buffer is None:
            if saved is None:
                return None
            return DocumentSnapshot(
                document_id, saved, version=self.version(document_id), saved_lines=saved
            )
        return DocumentSnapshot(
            document_id, tuple(buffer), version=self.version(document_id), saved_lines=saved
        )

    def version(self, document_id: str) -> object | None:
        view = self._views.get(document_id)
        if view is not None:
            return view.version
        generation = self._generations.get(document_id, 0)
        if document_id in self._buffers:
            return ("buffer", generation)
        try:
            stat = Path(document_id).stat()
        except OSError:
            return None
        return ("file", generation, stat.st_mtime_ns, stat.st_size)

    def _read_file(self, document_id: str) -> tuple[str, ...] | None:
        try:
            text = Path(document_id).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.debug(f"Cannot read {document_id!r}: {exc}")
            return None
        return tuple(text.splitlines())

    # --- Buffers ---

    def _bump(self, document_id: str) -> None:
        self._generations[document_id] = self._generations.get(document_id, 0) + 1

    def _buffer(self, document_id: str) -> list[str]:
        buffer = self._buffers.get(document_id)
        if buffer is None:
            saved = self._read_file(document_id)
            if saved is None:
                raise DocumentNotFoundError(document_id)
            buffer = self._buffers[document_id] = list(saved)
        return buffer

    def is_dirty(self, document_id: str) -> bool:
        return document_id in self._buffers

    def set_text(self, document_id: str, text: str) -> None:
        """Replace the unsaved content of a document."""
        self._buffers[document_id] = text.split("\n")
        self._bump(document_id)

    def edit(self, document_id: str, edit: TextEdit) -> TextEdit:
        """Apply a line-range edit to the unsaved buffer and return it."""
        buffer = self._buffer(document_id)
        self._buffers[document_id] = _apply_edit(buffer, edit)
        self._bump(document_id)
        return edit

    def replace_line(self, document_id: str, line_number: int, text: str) -> TextEdit:
        """Rewrite one line in place; returns the equivalent single-line edit."""
        buffer = self._buffer(document_id)
        if not 0 <= line_number < len(buffer):
            msg = f"Line {line_number} out of range for {document_id!r}"
            raise ValueError(msg)
        buffer[line_number] = text
        self._bump(document_id)
        return TextEdit(line_number, line_number, text)

    def save(self, document_id: str) -> bool:
        """Write the buffer to disk. Returns False when there was nothing to save."""
        buffer = self._buffers.pop(document_id, None)
        if buffer is None:
            return False
        path = Path(document_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("\n".join(buffer) + "\n", encoding="utf-8")
        self._bump(document_id)
        logger.debug(f"Saved {document_id!r}")
        return True

    def revert_buffer(self, document_id: str) -> bool:
        """Discard unsaved changes. Returns False when there were none."""
        if self._buffers.pop(document_id, None) is None:
            return False
        self._bump(document_id)
        return True

    # --- Views ---

    def all_views(self) -> list[DerivedView]:
        return list(self._views.values())

    def get_view(self, view_id: str) -> DerivedView | None:
        return self._views.get(view_id)

    def open_view(self, source_uri: str, chain: Sequence[ChainQuery]) -> DerivedView:
        """Run a chain against a source and register (or regenerate) the view.

        Raises:
            InvalidChainError: If the chain is invalid.
            DocumentNotFoundError: If the source cannot be read.
        """
        chain = normalize_chain(chain)
        result = self.searcher.execute(source_uri, chain)
        view_id = view_id_for(source_uri, chain)
        previous = self._views.get(view_id)
        view = DerivedView(
            document_id=view_id,
            source_uri=source_uri,
            chain=chain,
            lines=result.lines,
            version=previous.version + 1 if previous is not None else 1,
            stats=result.stats,
        )
        self._views[view_id] = view
        logger.debug(f"View {view_id} ({len(view.lines)} lines) from {source_uri!r}")
        return view

    def refresh_view(self, view_id: str) -> DerivedView:
        view = self._views.get(view_id)
        if view is None:
            raise DocumentNotFoundError(view_id)
        return self.open_view(view.source_uri, view.chain)

    def close_view(self, view_id: str) -> DerivedView | None:
        return self._views.pop(view_id, None)

    def restore_views(self, views: Iterable[DerivedView]) -> None:
        """Register previously persisted views as they were."""
        for view in views:
            self._views[view.document_id] = replace(view, chain=tuple(view.chain))

    # --- ViewRegistry ---

    def derived_documents(self, source_uri: str) -> list[str]:
        return [v.document_id for v in self._views.values() if v.source_uri == source_uri]

    def source_of(self, document_id: str) -> str | None:
        view = self._views.get(document_id)
        return view.source_uri if view is not None else None
