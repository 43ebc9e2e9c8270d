"""Document, edit and search-chain models."""

from dataclasses import dataclass, field
from typing import Literal


@dataclass(frozen=True)
class DocumentSnapshot:
    """Current per-line text of a document.

    ``version`` is opaque and changes whenever the content changes.
    ``saved_lines`` is the last-saved content when the provider tracks it.
    """

    document_id: str
    lines: tuple[str, ...]
    version: object = 0
    saved_lines: tuple[str, ...] | None = None

    @property
    def line_count(self) -> int:
        return len(self.lines)

    def line(self, line_number: int) -> str | None:
        """Return the trimmed text of a line, or None when out of range."""
        if 0 <= line_number < len(self.lines):
            return self.lines[line_number].strip()
        return None


@dataclass(frozen=True)
class TextEdit:
    """A text replacement, shaped like an editor change event.

    The replaced range starts somewhere on ``start_line`` and ends somewhere
    on ``end_line``; ``text`` is the inserted text and may contain newlines.
    Inserting ``"x\\n"`` at the start of line 0 is ``TextEdit(0, 0, "x\\n")``;
    deleting line 1 entirely is ``TextEdit(1, 2, "")``.
    """

    start_line: int
    end_line: int
    text: str = ""

    @property
    def added_lines(self) -> int:
        return self.text.count("\n")

    @property
    def removed_lines(self) -> int:
        return self.end_line - self.start_line

    @property
    def line_delta(self) -> int:
        return self.added_lines - self.removed_lines

    @property
    def is_single_line(self) -> bool:
        return self.start_line == self.end_line and "\n" not in self.text


@dataclass(frozen=True)
class ChainQuery:
    """One filter step of a search chain."""

    query: str
    kind: Literal["text", "regex"] = "text"
    inverted: bool = False
    case_sensitive: bool = False
    flags: str = ""


@dataclass(frozen=True)
class StepStats:
    step: int
    query: str
    match_count: int


@dataclass(frozen=True)
class ChainStats:
    total_lines: int
    steps: tuple[StepStats, ...] = ()

    @property
    def final_count(self) -> int:
        return self.steps[-1].match_count if self.steps else self.total_lines


@dataclass(frozen=True)
class SearchResult:
    """Lines produced by a search chain, with per-step statistics."""

    lines: tuple[str, ...]
    stats: ChainStats


@dataclass(frozen=True)
class DerivedView:
    """A filtered view generated by applying a chain to a source document."""

    document_id: str
    source_uri: str
    chain: tuple[ChainQuery, ...]
    lines: tuple[str, ...] = ()
    version: int = 0
    stats: ChainStats | None = field(default=None, compare=False)
