"""Protocols for dependency injection in the bookmark engine."""

from collections.abc import Iterable, Sequence
from typing import Any, Protocol, runtime_checkable

from chainmark.models.bookmark import Bookmark
from chainmark.models.document import ChainQuery, DerivedView, DocumentSnapshot, SearchResult


@runtime_checkable
class DocumentProvider(Protocol):
    """Protocol for anything that can hand out document text."""

    def read(self, document_id: str) -> DocumentSnapshot | None:
        """Return the current snapshot, or None if the document no longer exists."""
        ...

    def version(self, document_id: str) -> object | None:
        """Return the current version, or None if the document no longer exists."""
        ...


@runtime_checkable
class ViewRegistry(Protocol):
    """Protocol for the association between source documents and derived views."""

    def derived_documents(self, source_uri: str) -> list[str]:
        """Return the ids of all derived views currently generated from a source."""
        ...

    def source_of(self, document_id: str) -> str | None:
        """Return the source of a derived view, or None if it is not a view."""
        ...

    def all_views(self) -> list[DerivedView]:
        """Return every registered view (persisted alongside the bookmarks)."""
        ...

    def restore_views(self, views: Iterable[DerivedView]) -> None:
        """Register previously persisted views."""
        ...


@runtime_checkable
class SearchExecutor(Protocol):
    """Protocol for search-chain execution."""

    def execute(self, source_uri: str, chain: Sequence[ChainQuery]) -> SearchResult:
        """Apply the chain to the source document and return the surviving lines."""
        ...


@runtime_checkable
class BookmarkPersistence(Protocol):
    """Protocol for loading and saving the full bookmark set."""

    def load(self) -> tuple[list[Bookmark], list[DerivedView]]:
        """Return persisted bookmarks and views (empty lists if nothing is stored)."""
        ...

    def save(self, bookmarks: Iterable[Bookmark], views: Iterable[DerivedView]) -> Any:
        """Persist bookmarks and views."""
        ...


@runtime_checkable
class RefreshListener(Protocol):
    """Protocol for presentation collaborators that redraw on change."""

    def refresh(self) -> None:
        """Called after any observable change to the bookmark set."""
        ...
