"""Line-shift prediction from editor change events."""

from collections.abc import Sequence

from chainmark.models.document import TextEdit

_MAX_CANDIDATES = 8


def predicted_lines(line_number: int, edits: Sequence[TextEdit]) -> list[int]:
    """Where a line probably moved to after ``edits`` were applied in order.

    A line entirely after an edit shifts by the edit's line delta. A line
    touched by an edit is ambiguous (edits carry no columns), so both the
    shifted position and the edit's start line are kept. Candidates are
    ordered most-likely first and must be confirmed against the text.
    """
    positions = [line_number]
    for edit in edits:
        moved: list[int] = []
        for pos in positions:
            if pos > edit.end_line:
                options = [pos + edit.line_delta]
            elif pos < edit.start_line:
                options = [pos]
            else:
                options = [pos + edit.line_delta, edit.start_line, pos]
            for option in options:
                if option >= 0 and option not in moved:
                    moved.append(option)
        positions = moved[:_MAX_CANDIDATES]
    return positions
