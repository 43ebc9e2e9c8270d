"""Shared test fixtures."""

import pytest

from chainmark.core.anchor.matcher import AnchorMatcher
from chainmark.core.store.bookmark_store import BookmarkStore
from chainmark.core.sync.coordinator import SyncCoordinator
from tests.unit.fakes import LOG_LINES, FakeDocuments


@pytest.fixture
def docs() -> FakeDocuments:
    documents = FakeDocuments()
    documents.set_lines("src.log", LOG_LINES)
    return documents


@pytest.fixture
def store() -> BookmarkStore:
    return BookmarkStore()


@pytest.fixture
def coordinator(store: BookmarkStore, docs: FakeDocuments) -> SyncCoordinator:
    return SyncCoordinator(store, AnchorMatcher(), docs, docs)
