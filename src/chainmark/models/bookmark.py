"""Domain models for bookmarks and their anchors."""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum


@dataclass(frozen=True)
class SourceAnchor:
    """The bookmark lives in its origin document."""

    kind = "source"


@dataclass(frozen=True)
class MirrorAnchor:
    """The bookmark lives in a derived view of the origin document."""

    document_id: str
    kind = "mirror"


Anchor = SourceAnchor | MirrorAnchor

SOURCE = SourceAnchor()


@dataclass(frozen=True)
class AnchorContext:
    """Positional fingerprint used for re-anchoring, not for display.

    ``before_lines``/``after_lines`` are ``None`` when a record was loaded
    without them; such a context contributes zero similarity.
    """

    before_lines: tuple[str, ...] | None = ()
    after_lines: tuple[str, ...] | None = ()
    occurrence_index: int | None = 0
    relative_position: float = 0.0

    @property
    def is_malformed(self) -> bool:
        return self.before_lines is None or self.after_lines is None


class LinkState(Enum):
    """Link status of a pair of bookmarks."""

    UNLINKED = "unlinked"
    PENDING_LINK = "pending_link"
    LINKED = "linked"


def new_bookmark_id() -> str:
    return uuid.uuid4().hex


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Bookmark:
    """A marked line, either canonical (source) or a mirror in a derived view."""

    source_uri: str
    line_number: int
    line_text: str
    anchor: Anchor = SOURCE
    context: AnchorContext = field(default_factory=AnchorContext)
    label: str | None = None
    linked_id: str | None = None
    id: str = field(default_factory=new_bookmark_id)
    timestamp: int = field(default_factory=now_ms)

    @property
    def is_source(self) -> bool:
        return isinstance(self.anchor, SourceAnchor)

    @property
    def document_id(self) -> str:
        """The document this bookmark lives in."""
        if isinstance(self.anchor, MirrorAnchor):
            return self.anchor.document_id
        return self.source_uri

    @property
    def occurrence_index(self) -> int | None:
        return self.context.occurrence_index
