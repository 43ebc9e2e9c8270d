"""Search-chain execution: successive line filters over a source document."""

import hashlib
import re
from collections.abc import Sequence
from dataclasses import replace
from pathlib import PurePosixPath

from loguru import logger

from chainmark.config import (
    DESCRIPTOR_QUERY_LENGTH,
    MAX_BASE_NAME_LENGTH,
    MAX_CHAIN_DESCRIPTOR_LENGTH,
)
from chainmark.errors import DocumentNotFoundError, InvalidChainError
from chainmark.models.document import ChainQuery, ChainStats, SearchResult, StepStats
from chainmark.protocols import DocumentProvider

_FLAG_BITS = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
    "x": re.VERBOSE,
    "a": re.ASCII,
    "u": re.UNICODE,
    "g": 0,
}


def _regex_flags(query: ChainQuery) -> tuple[str, int]:
    """Normalized flag letters and the compiled ``re`` flags for a regex step.

    ``s`` is always added; ``i`` is added unless the step is case sensitive.
    """
    letters = query.flags
    if "s" not in letters:
        letters += "s"
    if not query.case_sensitive and "i" not in letters:
        letters += "i"
    bits = 0
    for letter in letters:
        bits |= _FLAG_BITS.get(letter, 0)
    return letters, bits


def validate_chain(chain: Sequence[ChainQuery]) -> list[str]:
    """Return human-readable problems with a chain (empty when valid)."""
    errors: list[str] = []
    for index, query in enumerate(chain, start=1):
        if not query.query:
            errors.append(f"Step {index}: Empty query")
            continue
        if query.kind != "regex":
            continue
        unknown = sorted(set(query.flags) - set(_FLAG_BITS))
        if unknown:
            errors.append(f"Step {index}: Unknown regex flags '{''.join(unknown)}'")
            continue
        letters, bits = _regex_flags(query)
        try:
            re.compile(query.query, bits)
        except (re.error, ValueError):
            errors.append(f"Step {index}: Invalid regex '{query.query}' with flags '{letters}'")
    return errors


def apply_chain_query(lines: Sequence[str], query: ChainQuery) -> list[str]:
    """Keep the lines matching one step (or not matching, when inverted)."""
    if query.kind == "regex":
        _, bits = _regex_flags(query)
        pattern = re.compile(query.query, bits)
        return [line for line in lines if bool(pattern.search(line)) != query.inverted]

    if query.case_sensitive:
        return [line for line in lines if (query.query in line) != query.inverted]
    needle = query.query.lower()
    return [line for line in lines if (needle in line.lower()) != query.inverted]


def run_chain(lines: Sequence[str], chain: Sequence[ChainQuery]) -> SearchResult:
    """Apply every step in order, recording how many lines survive each one.

    Raises:
        InvalidChainError: If any step cannot be executed.
    """
    errors = validate_chain(chain)
    if errors:
        raise InvalidChainError(errors)
    filtered = list(lines)
    steps: list[StepStats] = []
    for number, query in enumerate(chain, start=1):
        filtered = apply_chain_query(filtered, query)
        steps.append(StepStats(step=number, query=query.query, match_count=len(filtered)))
    return SearchResult(
        lines=tuple(filtered), stats=ChainStats(total_lines=len(lines), steps=tuple(steps))
    )


class ChainSearcher:
    """Runs chains against documents handed out by a provider."""

    def __init__(self, documents: DocumentProvider) -> None:
        self.documents = documents

    def execute(self, source_uri: str, chain: Sequence[ChainQuery]) -> SearchResult:
        """Apply ``chain`` to the current text of ``source_uri``.

        Raises:
            InvalidChainError: If the chain is invalid.
            DocumentNotFoundError: If the source cannot be read.
        """
        errors = validate_chain(chain)
        if errors:
            raise InvalidChainError(errors)
        snapshot = self.documents.read(source_uri)
        if snapshot is None:
            raise DocumentNotFoundError(source_uri)
        result = run_chain(snapshot.lines, chain)
        logger.debug(
            f"Chain {build_chain_descriptor(chain)} on {source_uri!r}: "
            f"{result.stats.final_count}/{result.stats.total_lines} lines"
        )
        return result


def normalize_chain(chain: Sequence[ChainQuery]) -> tuple[ChainQuery, ...]:
    """Chain with regex flags spelled out the way they are executed."""
    return tuple(
        replace(q, flags=_regex_flags(q)[0]) if q.kind == "regex" else q for q in chain
    )


def build_chain_descriptor(chain: Sequence[ChainQuery]) -> str:
    """Compact one-line form of a chain, e.g. ``T[error]->R!C[^\\d+]``."""
    parts = []
    for query in chain:
        prefix = "T" if query.kind == "text" else "R"
        invert = "!" if query.inverted else ""
        case = "C" if query.case_sensitive else ""
        text = query.query
        if len(text) > DESCRIPTOR_QUERY_LENGTH:
            text = text[:DESCRIPTOR_QUERY_LENGTH] + "..."
        parts.append(f"{prefix}{invert}{case}[{text}]")
    return "->".join(parts)


def build_chain_header(chain: Sequence[ChainQuery], stats: ChainStats | None = None) -> str:
    """Multi-line summary of a chain and its per-step match counts."""
    lines = ["--- Chain Steps ---"]
    for index, query in enumerate(chain):
        if query.kind == "text":
            step = f'{index + 1}. [Text] Search for: "{query.query}"'
        else:
            step = f'{index + 1}. [Regex] Search for: "{query.query}"'
            if query.flags:
                step += f' with flags: "{query.flags}"'
        if query.inverted:
            step += " (Inverted)"
        step += " (Case Sensitive)" if query.case_sensitive else " (Case Insensitive)"
        if stats is not None and index < len(stats.steps):
            step += f" -> {stats.steps[index].match_count} matches"
        lines.append(step)

    if stats is not None and stats.steps:
        final = stats.final_count
        percentage = final / (stats.total_lines or 1) * 100
        lines.append(f"--- Results: {final} matches ({percentage:.1f}% of source) ---")
    else:
        lines.append("-------------------")
    return "\n".join(lines)


def _truncate(text: str, limit: int) -> str:
    if limit > 0 and len(text) > limit:
        return "..." + text[-limit:]
    return text


def view_name(source_uri: str, chain: Sequence[ChainQuery]) -> str:
    """Display name of a derived view, e.g. ``[app] : T[error].log``."""
    path = PurePosixPath(source_uri)
    base = _truncate(path.stem, MAX_BASE_NAME_LENGTH)
    descriptor = _truncate(build_chain_descriptor(chain), MAX_CHAIN_DESCRIPTOR_LENGTH)
    return f"[{base}] : {descriptor}{path.suffix}"


def view_id_for(source_uri: str, chain: Sequence[ChainQuery]) -> str:
    """Stable, opaque id of the view a chain produces from a source."""
    key = "\x00".join([source_uri, *(repr(q) for q in normalize_chain(chain))])
    return "view:" + hashlib.sha1(key.encode("utf-8")).hexdigest()[:12]
