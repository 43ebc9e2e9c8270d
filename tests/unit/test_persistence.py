"""Tests for the JSON state file."""

import json
from pathlib import Path

import pytest

from chainmark.errors import StateFileError
from chainmark.models.bookmark import AnchorContext, Bookmark, MirrorAnchor
from chainmark.models.document import ChainQuery, DerivedView
from chainmark.persistence import PathRewriter, StateFile
from tests.unit.fakes import LOG_LINES, capture


@pytest.fixture
def rewriter(tmp_path: Path) -> PathRewriter:
    return PathRewriter(tmp_path)


def _state(rewriter: PathRewriter) -> tuple[list[Bookmark], list[DerivedView]]:
    source_uri = f"{rewriter.root}/logs/app.log"
    view = DerivedView(
        document_id="view:0123456789ab",
        source_uri=source_uri,
        chain=(ChainQuery("fail"), ChainQuery("^E", "regex", flags="si")),
        lines=("ERROR fail",),
        version=3,
    )
    source = capture(source_uri, LOG_LINES, 1, label="disk")
    mirror = capture(
        view.document_id,
        ["ERROR fail"],
        0,
        anchor=MirrorAnchor(view.document_id),
        source_uri=source_uri,
        linked_id=source.id,
    )
    return [source, mirror], [view]


def test_path_rewriter(rewriter: PathRewriter) -> None:
    inside = f"{rewriter.root}/logs/app.log"

    assert rewriter.to_stored(inside) == "${workspace}/logs/app.log"
    assert rewriter.from_stored("${workspace}/logs/app.log") == inside
    assert rewriter.to_stored("/elsewhere/app.log") == "/elsewhere/app.log"
    assert rewriter.to_stored("view:0123456789ab") == "view:0123456789ab"


def test_save_and_load(tmp_path: Path, rewriter: PathRewriter) -> None:
    bookmarks, views = _state(rewriter)
    state = StateFile(tmp_path / ".chainmark" / "bookmarks.json", rewriter)

    assert state.save(bookmarks, views)
    loaded_bookmarks, loaded_views = state.load()

    assert sorted(loaded_bookmarks, key=lambda b: b.id) == sorted(bookmarks, key=lambda b: b.id)
    assert loaded_views == views


def test_saved_paths_are_workspace_relative(tmp_path: Path, rewriter: PathRewriter) -> None:
    bookmarks, views = _state(rewriter)
    path = tmp_path / "state.json"

    StateFile(path, rewriter).save(bookmarks, views)
    data = json.loads(path.read_text())

    assert data["version"] == 1
    assert {b["source_uri"] for b in data["bookmarks"]} == {"${workspace}/logs/app.log"}
    assert data["views"][0]["source_uri"] == "${workspace}/logs/app.log"
    assert rewriter.root not in path.read_text()


def test_unchanged_state_is_not_rewritten(tmp_path: Path, rewriter: PathRewriter) -> None:
    bookmarks, views = _state(rewriter)
    state = StateFile(tmp_path / "state.json", rewriter)

    assert state.save(bookmarks, views)
    assert not state.save(list(reversed(bookmarks)), views)
    assert state.save(bookmarks[:1], views)


def test_missing_file_loads_empty(tmp_path: Path) -> None:
    assert StateFile(tmp_path / "nothing.json").load() == ([], [])


@pytest.mark.parametrize("contents", ["{not json", "[1, 2]"])
def test_invalid_file_raises(tmp_path: Path, contents: str) -> None:
    path = tmp_path / "state.json"
    path.write_text(contents)

    with pytest.raises(StateFileError):
        StateFile(path).load()


def test_malformed_records_are_skipped(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    good = {"id": "b1", "source_uri": "/a.log", "line_number": 2, "line_text": "ERROR fail"}
    path.write_text(
        json.dumps({"bookmarks": [{"id": "broken"}, good], "views": [{"chain": []}]})
    )

    bookmarks, views = StateFile(path).load()

    assert [b.id for b in bookmarks] == ["b1"]
    assert views == []


def test_record_without_context_loads_malformed_context(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    record = {"id": "b1", "source_uri": "/a.log", "line_number": 2, "line_text": "ERROR fail"}
    path.write_text(json.dumps({"bookmarks": [record]}))

    (bookmark,) = StateFile(path).load()[0]

    assert bookmark.is_source
    assert bookmark.context.is_malformed
    assert bookmark.context == AnchorContext(
        before_lines=None, after_lines=None, occurrence_index=None
    )
