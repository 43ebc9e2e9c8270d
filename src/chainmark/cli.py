"""CLI for chainmark: line bookmarks that follow edits and filtered views."""

import json
from functools import cached_property
from pathlib import Path
from typing import Annotated

import typer
from loguru import logger

from chainmark.config import CONTEXT_WINDOW, resolve_state_file
from chainmark.core.search.chain import build_chain_header
from chainmark.core.store.bookmark_store import BookmarkQuery
from chainmark.errors import ChainmarkError, DocumentNotFoundError
from chainmark.logging_config import configure_logging
from chainmark.models.bookmark import Bookmark
from chainmark.models.document import ChainQuery
from chainmark.persistence import PathRewriter, StateFile
from chainmark.service import BookmarkService
from chainmark.workspace import Workspace, is_view_id

app = typer.Typer(help="chainmark: line bookmarks that survive edits and filtered views.")


class _Session:
    """Workspace and service for one command, built on first use."""

    def __init__(self, root: Path, state_file: Path | None) -> None:
        self.root = root
        self.state_file = state_file

    @cached_property
    def workspace(self) -> Workspace:
        return Workspace(self.root)

    @cached_property
    def service(self) -> BookmarkService:
        path = self.state_file or resolve_state_file(self.workspace.root)
        state = StateFile(path, PathRewriter(self.workspace.root))
        service = BookmarkService(self.workspace, self.workspace, persistence=state)
        try:
            service.load()
        except ChainmarkError as exc:
            logger.error("{}", exc)
            raise typer.Exit(1) from exc
        return service


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    root: Annotated[
        Path | None,
        typer.Option("--root", "-R", help="Workspace root (default: current directory)"),
    ] = None,
    state_file: Annotated[
        Path | None,
        typer.Option("--state-file", help="Bookmark state file (default: under the root)"),
    ] = None,
) -> None:
    configure_logging(verbose=verbose)
    ctx.obj = _Session(root or Path.cwd(), state_file)


def _session(ctx: typer.Context) -> _Session:
    return ctx.obj


def _resolve_bookmark(service: BookmarkService, prefix: str) -> Bookmark:
    """Find a bookmark by id or unique id prefix."""
    matches = [b for b in service.store.all() if b.id.startswith(prefix)]
    if len(matches) != 1:
        reason = "not found" if not matches else "is ambiguous"
        logger.error("Bookmark id {!r} {}", prefix, reason)
        raise typer.Exit(1)
    return matches[0]


def _describe(workspace: Workspace, bookmark: Bookmark) -> str:
    where = f"{workspace.display_name(bookmark.document_id)}:{bookmark.line_number + 1}"
    label = f"  [{bookmark.label}]" if bookmark.label else ""
    kind = "" if bookmark.is_source else "  (mirror)"
    return f"  {bookmark.id[:8]}  {where}  {bookmark.line_text}{label}{kind}"


def parse_step(step: str, *, case_sensitive: bool = False) -> ChainQuery:
    """Parse one chain step: ``[!][re:]query`` (``!`` inverts, ``re:`` means regex)."""
    inverted = step.startswith("!")
    if inverted:
        step = step[1:]
    if step.startswith("re:"):
        return ChainQuery(step[3:], "regex", inverted=inverted, case_sensitive=case_sensitive)
    return ChainQuery(step, "text", inverted=inverted, case_sensitive=case_sensitive)


@app.command()
def add(
    ctx: typer.Context,
    document: str = typer.Argument(..., help="File path or view id"),
    line: int = typer.Argument(..., help="Line number (1-based)"),
    label: Annotated[str | None, typer.Option("--label", "-l", help="Bookmark label")] = None,
) -> None:
    """Bookmark a line of a file or a view."""
    session = _session(ctx)
    doc_id = session.workspace.document_id(document)
    if session.service.bookmark_at(doc_id, line - 1) is not None:
        typer.echo(f"Line {line} of {document} is already bookmarked.")
        raise typer.Exit(1)
    try:
        bookmark = session.service.toggle_bookmark(doc_id, line - 1, label)
    except (DocumentNotFoundError, ValueError) as exc:
        logger.error("{}", exc)
        raise typer.Exit(1) from exc
    if bookmark is not None:
        typer.echo(f"Added {bookmark.id[:8]} at {document}:{line}")


@app.command()
def remove(
    ctx: typer.Context,
    bookmark_id: str = typer.Argument(..., help="Bookmark id (or unique prefix)"),
    related: bool = typer.Option(
        False, "--related", "-r", help="Also remove mirrors and the linked source"
    ),
) -> None:
    """Remove a bookmark."""
    service = _session(ctx).service
    bookmark = _resolve_bookmark(service, bookmark_id)
    if related:
        removed = service.remove_bookmark_with_related(bookmark.id)
    else:
        removed = [b for b in [service.remove_bookmark(bookmark.id)] if b is not None]
    typer.echo(f"Removed {len(removed)} bookmark(s)")


@app.command(name="list")
def list_cmd(
    ctx: typer.Context,
    document: Annotated[
        str | None,
        typer.Option("--document", "-D", help="Only bookmarks living in this file or view"),
    ] = None,
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """List bookmarks."""
    session = _session(ctx)
    criteria = BookmarkQuery()
    if document:
        criteria = BookmarkQuery(document_id=session.workspace.document_id(document))
    bookmarks = sorted(
        session.service.find_bookmarks(criteria),
        key=lambda b: (b.source_uri, not b.is_source, b.document_id, b.line_number),
    )

    if output_json:
        data = [
            {
                "id": b.id,
                "document": session.workspace.display_name(b.document_id),
                "source": session.workspace.display_name(b.source_uri),
                "line": b.line_number + 1,
                "text": b.line_text,
                "label": b.label,
                "mirror": not b.is_source,
                "linked_id": b.linked_id,
            }
            for b in bookmarks
        ]
        typer.echo(json.dumps(data, indent=2))
        return

    typer.echo(f"{len(bookmarks)} bookmark(s):")
    for bookmark in bookmarks:
        typer.echo(_describe(session.workspace, bookmark))


@app.command()
def grep(
    ctx: typer.Context,
    document: str = typer.Argument(..., help="Source file"),
    steps: list[str] = typer.Argument(..., help="Chain steps: [!][re:]query"),
    case_sensitive: bool = typer.Option(
        False, "--case-sensitive", "-c", help="Match case in every step"
    ),
    header: bool = typer.Option(False, "--header", "-H", help="Print the chain summary"),
) -> None:
    """Open (or regenerate) a filtered view of a file and carry bookmarks into it."""
    session = _session(ctx)
    source_uri = session.workspace.document_id(document)
    chain = [parse_step(step, case_sensitive=case_sensitive) for step in steps]
    try:
        view = session.workspace.open_view(source_uri, chain)
    except ChainmarkError as exc:
        logger.error("{}", exc)
        raise typer.Exit(1) from exc
    session.service.view_opened(view.document_id)

    typer.echo(f"{view.document_id}  {session.workspace.display_name(view.document_id)}")
    if header:
        typer.echo(build_chain_header(view.chain, view.stats))
    marked = {b.line_number for b in session.service.store.for_document(view.document_id)}
    for number, text in enumerate(view.lines):
        marker = "*" if number in marked else " "
        typer.echo(f"{marker}{number + 1:>5}  {text}")


@app.command()
def views(ctx: typer.Context) -> None:
    """List open views."""
    session = _session(ctx)
    all_views = session.service.views.all_views()
    typer.echo(f"{len(all_views)} view(s):")
    for view in all_views:
        name = session.workspace.display_name(view.document_id)
        typer.echo(f"  {view.document_id}  {name}  ({len(view.lines)} lines)")


@app.command()
def close(
    ctx: typer.Context,
    view_id: str = typer.Argument(..., help="View id"),
) -> None:
    """Close a view and drop its mirrors."""
    session = _session(ctx)
    service = session.service
    if session.workspace.get_view(view_id) is None:
        typer.echo(f"View '{view_id}' not found.")
        raise typer.Exit(1)
    removed = service.view_closed(view_id)
    session.workspace.close_view(view_id)
    service.save()
    typer.echo(f"Closed {view_id} ({len(removed)} mirror(s) dropped)")


@app.command()
def reanchor(
    ctx: typer.Context,
    document: str = typer.Argument(..., help="File that changed"),
) -> None:
    """Re-locate the bookmarks of a file after it changed, and refresh its views."""
    session = _session(ctx)
    service = session.service
    doc_id = session.workspace.document_id(document)
    outcome = service.reanchor(doc_id)
    if outcome.missing_document:
        logger.error("Cannot read {}", document)
        raise typer.Exit(1)

    if not is_view_id(doc_id):
        for view_id in session.workspace.derived_documents(doc_id):
            try:
                session.workspace.refresh_view(view_id)
            except ChainmarkError as exc:
                logger.warning("Cannot refresh {}: {}", view_id, exc)
                continue
            service.view_opened(view_id)

    typer.echo(
        f"{len(outcome.moved)} moved, {len(outcome.updated)} updated, "
        f"{len(outcome.unresolved)} not found"
    )


@app.command()
def revert(
    ctx: typer.Context,
    document: str = typer.Argument(..., help="File whose unsaved changes were discarded"),
) -> None:
    """Restore bookmark text from the saved content of a file."""
    session = _session(ctx)
    outcome = session.service.revert(session.workspace.document_id(document))
    if outcome.missing_document:
        logger.error("Cannot read {}", document)
        raise typer.Exit(1)
    typer.echo(f"{len(outcome.moved) + len(outcome.updated)} bookmark(s) restored")


@app.command()
def context(
    ctx: typer.Context,
    document: str = typer.Argument(..., help="File path or view id"),
    line: int = typer.Argument(..., help="Line number (1-based)"),
    window: int = typer.Option(CONTEXT_WINDOW, "--window", "-w", help="Lines on each side"),
) -> None:
    """Show the fingerprint captured for a line."""
    session = _session(ctx)
    ctx_data = session.service.get_anchor_context(
        session.workspace.document_id(document), line - 1, window
    )
    data = {
        "before_lines": list(ctx_data.before_lines or ()),
        "after_lines": list(ctx_data.after_lines or ()),
        "occurrence_index": ctx_data.occurrence_index,
        "relative_position": round(ctx_data.relative_position, 4),
    }
    typer.echo(json.dumps(data, indent=2))


@app.command(name="open")
def open_cmd(
    ctx: typer.Context,
    bookmark_id: str = typer.Argument(..., help="Bookmark id (or unique prefix)"),
) -> None:
    """Print where a bookmark currently points."""
    session = _session(ctx)
    bookmark = _resolve_bookmark(session.service, bookmark_id)
    try:
        bookmark, text = session.service.open_bookmark(bookmark.id)
    except DocumentNotFoundError as exc:
        logger.error("{}", exc)
        raise typer.Exit(1) from exc
    name = session.workspace.display_name(bookmark.document_id)
    typer.echo(f"{name}:{bookmark.line_number + 1}: {text}")


@app.command()
def clear(
    ctx: typer.Context,
    document: Annotated[
        str | None, typer.Argument(help="File or view to clear (omit with --all)")
    ] = None,
    source: bool = typer.Option(
        False, "--source", "-s", help="Also drop every mirror of this source file"
    ),
    clear_all: bool = typer.Option(False, "--all", "-a", help="Remove every bookmark"),
) -> None:
    """Remove bookmarks from a document, a whole source, or everywhere."""
    session = _session(ctx)
    service = session.service
    if clear_all:
        removed = []
        for source_uri in sorted({b.source_uri for b in service.store.all()}):
            removed += service.remove_source(source_uri)
    elif document:
        doc_id = session.workspace.document_id(document)
        removed = service.remove_source(doc_id) if source else service.clear_document(doc_id)
    else:
        typer.echo("Give a document or --all.")
        raise typer.Exit(1)
    typer.echo(f"Removed {len(removed)} bookmark(s)")
