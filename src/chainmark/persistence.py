"""JSON state file holding bookmarks and derived views."""

import json
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from loguru import logger

from chainmark.config import WORKSPACE_PREFIX
from chainmark.errors import StateFileError
from chainmark.models.bookmark import SOURCE, AnchorContext, Bookmark, MirrorAnchor
from chainmark.models.document import ChainQuery, DerivedView

FORMAT_VERSION = 1


class PathRewriter:
    """Store paths under the workspace root as ``${workspace}/relative``.

    Paths outside the root and view ids are stored unchanged.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser().resolve().as_posix().rstrip("/")

    def to_stored(self, uri: str) -> str:
        if uri.startswith(self.root + "/"):
            return WORKSPACE_PREFIX + uri[len(self.root) + 1 :]
        return uri

    def from_stored(self, uri: str) -> str:
        if uri.startswith(WORKSPACE_PREFIX):
            return f"{self.root}/{uri[len(WORKSPACE_PREFIX) :]}"
        return uri


class _IdentityRewriter:
    def to_stored(self, uri: str) -> str:
        return uri

    def from_stored(self, uri: str) -> str:
        return uri


def _bookmark_to_json(bookmark: Bookmark, rewriter: PathRewriter | _IdentityRewriter) -> dict:
    anchor: dict[str, Any] = {"kind": bookmark.anchor.kind}
    if isinstance(bookmark.anchor, MirrorAnchor):
        anchor["document_id"] = rewriter.to_stored(bookmark.anchor.document_id)
    ctx = bookmark.context
    return {
        "id": bookmark.id,
        "source_uri": rewriter.to_stored(bookmark.source_uri),
        "anchor": anchor,
        "line_number": bookmark.line_number,
        "line_text": bookmark.line_text,
        "label": bookmark.label,
        "linked_id": bookmark.linked_id,
        "timestamp": bookmark.timestamp,
        "context": {
            "before_lines": list(ctx.before_lines) if ctx.before_lines is not None else None,
            "after_lines": list(ctx.after_lines) if ctx.after_lines is not None else None,
            "occurrence_index": ctx.occurrence_index,
            "relative_position": ctx.relative_position,
        },
    }


def _optional_lines(value: Any) -> tuple[str, ...] | None:
    if not isinstance(value, list):
        return None
    return tuple(str(line) for line in value)


def _bookmark_from_json(
    data: dict, rewriter: PathRewriter | _IdentityRewriter
) -> Bookmark:
    anchor_data = data.get("anchor") or {"kind": "source"}
    if anchor_data.get("kind") == "mirror":
        anchor = MirrorAnchor(rewriter.from_stored(anchor_data["document_id"]))
    else:
        anchor = SOURCE
    # Records without context arrays load with a malformed (zero-weight) context.
    ctx = data.get("context") or {}
    context = AnchorContext(
        before_lines=_optional_lines(ctx.get("before_lines")),
        after_lines=_optional_lines(ctx.get("after_lines")),
        occurrence_index=ctx.get("occurrence_index"),
        relative_position=float(ctx.get("relative_position") or 0.0),
    )
    return Bookmark(
        id=data["id"],
        source_uri=rewriter.from_stored(data["source_uri"]),
        anchor=anchor,
        line_number=int(data["line_number"]),
        line_text=data["line_text"],
        label=data.get("label"),
        linked_id=data.get("linked_id"),
        timestamp=int(data.get("timestamp") or 0),
        context=context,
    )


def _view_to_json(view: DerivedView, rewriter: PathRewriter | _IdentityRewriter) -> dict:
    return {
        "document_id": view.document_id,
        "source_uri": rewriter.to_stored(view.source_uri),
        "chain": [
            {
                "query": q.query,
                "kind": q.kind,
                "inverted": q.inverted,
                "case_sensitive": q.case_sensitive,
                "flags": q.flags,
            }
            for q in view.chain
        ],
        "lines": list(view.lines),
        "version": view.version,
    }


def _view_from_json(data: dict, rewriter: PathRewriter | _IdentityRewriter) -> DerivedView:
    chain = tuple(
        ChainQuery(
            query=step["query"],
            kind=step.get("kind", "text"),
            inverted=bool(step.get("inverted", False)),
            case_sensitive=bool(step.get("case_sensitive", False)),
            flags=step.get("flags", ""),
        )
        for step in data.get("chain", [])
    )
    return DerivedView(
        document_id=data["document_id"],
        source_uri=rewriter.from_stored(data["source_uri"]),
        chain=chain,
        lines=tuple(data.get("lines", [])),
        version=int(data.get("version", 0)),
    )


class StateFile:
    """Load and save the bookmark set as JSON.

    The file is only rewritten when its contents would change.
    """

    def __init__(self, path: str | Path, rewriter: PathRewriter | None = None) -> None:
        self.path = Path(path)
        self.rewriter = rewriter or _IdentityRewriter()

    def load(self) -> tuple[list[Bookmark], list[DerivedView]]:
        """Read the state file.

        Returns:
            Bookmarks and views; both empty when the file does not exist.

        Raises:
            StateFileError: If the file is not valid state JSON.
        """
        try:
            contents = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return [], []
        except OSError as exc:
            msg = f"Cannot read state file {str(self.path)!r}: {exc}"
            raise StateFileError(msg) from exc
        try:
            data = json.loads(contents)
        except json.JSONDecodeError as exc:
            msg = f"State file {str(self.path)!r} is not valid JSON: {exc}"
            raise StateFileError(msg) from exc
        if not isinstance(data, dict):
            msg = f"State file {str(self.path)!r} must contain a JSON object"
            raise StateFileError(msg)

        bookmarks: list[Bookmark] = []
        for record in data.get("bookmarks", []):
            try:
                bookmarks.append(_bookmark_from_json(record, self.rewriter))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning(f"Skipping malformed bookmark record {record!r}: {exc!r}")

        views: list[DerivedView] = []
        for record in data.get("views", []):
            try:
                views.append(_view_from_json(record, self.rewriter))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning(f"Skipping malformed view record {record!r}: {exc!r}")

        logger.debug(f"Loaded {len(bookmarks)} bookmark(s), {len(views)} view(s)")
        return bookmarks, views

    def save(self, bookmarks: Iterable[Bookmark], views: Iterable[DerivedView]) -> bool:
        """Write the state file. Returns True when the file changed."""
        data = {
            "version": FORMAT_VERSION,
            "bookmarks": [
                _bookmark_to_json(b, self.rewriter)
                for b in sorted(bookmarks, key=lambda b: (b.timestamp, b.id))
            ],
            "views": [
                _view_to_json(v, self.rewriter)
                for v in sorted(views, key=lambda v: v.document_id)
            ],
        }
        contents = json.dumps(data, sort_keys=True, indent=4) + "\n"
        try:
            if self.path.read_text(encoding="utf-8") == contents:
                return False
        except (FileNotFoundError, UnicodeDecodeError):
            pass

        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(contents, encoding="utf-8")
        logger.debug(f"Wrote state file {str(self.path)!r}")
        return True
