"""Fingerprint capture for anchored lines."""

import hashlib
from collections.abc import Sequence

from chainmark.config import CONTEXT_WINDOW
from chainmark.models.bookmark import AnchorContext


def line_hash(text: str) -> str:
    """Stable content hash of a (trimmed) line."""
    return hashlib.sha1(text.strip().encode("utf-8")).hexdigest()


def occurrence_index(lines: Sequence[str], line_number: int) -> int:
    """Count lines before ``line_number`` whose trimmed text equals that line's.

    Out-of-range lines and blank lines report 0.
    """
    if not 0 <= line_number < len(lines):
        return 0
    target = lines[line_number].strip()
    if not target:
        return 0
    return sum(1 for line in lines[:line_number] if line.strip() == target)


def occurrence_indices(lines: Sequence[str], text: str) -> dict[int, int]:
    """Map every line whose trimmed text equals ``text`` to its occurrence index."""
    result: dict[int, int] = {}
    seen = 0
    for number, line in enumerate(lines):
        if line.strip() == text:
            result[number] = seen
            seen += 1
    return result


def relative_position(line_number: int, line_count: int) -> float:
    return line_number / (line_count or 1)


def get_anchor_context(
    lines: Sequence[str],
    line_number: int,
    window: int = CONTEXT_WINDOW,
) -> AnchorContext:
    """Capture the fingerprint of a line.

    Args:
        lines: Document lines (untrimmed).
        line_number: 0-based line to fingerprint.
        window: Number of lines to keep on each side.

    Returns:
        The context; an out-of-range line yields empty neighbour lists.
    """
    if not 0 <= line_number < len(lines):
        return AnchorContext(
            before_lines=(),
            after_lines=(),
            occurrence_index=0,
            relative_position=relative_position(line_number, len(lines)),
        )
    start = max(0, line_number - window)
    end = min(len(lines), line_number + window + 1)
    return AnchorContext(
        before_lines=tuple(line.strip() for line in lines[start:line_number]),
        after_lines=tuple(line.strip() for line in lines[line_number + 1 : end]),
        occurrence_index=occurrence_index(lines, line_number),
        relative_position=relative_position(line_number, len(lines)),
    )
