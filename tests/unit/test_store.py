"""Tests for the bookmark store."""

from dataclasses import replace

from chainmark.core.store.bookmark_store import BookmarkQuery, BookmarkStore
from chainmark.models.bookmark import SOURCE, AnchorContext, Bookmark, LinkState, MirrorAnchor


def _source(line: int = 1, text: str = "ERROR fail", uri: str = "src.log") -> Bookmark:
    return Bookmark(source_uri=uri, line_number=line, line_text=text)


def _mirror(view: str, line: int = 0, text: str = "ERROR fail", **kwargs: object) -> Bookmark:
    return Bookmark(
        source_uri="src.log",
        line_number=line,
        line_text=text,
        anchor=MirrorAnchor(view),
        **kwargs,  # type: ignore[arg-type]
    )


def test_add_and_lookup_by_line(store: BookmarkStore) -> None:
    source = store.add(_source())
    mirror = store.add(_mirror("view:1"))

    assert len(store) == 2
    assert source.id in store
    assert store.source_bookmarks_at_line("src.log", 1) == [source]
    assert store.bookmarks_at_line("view:1", 0) == [mirror]
    assert store.has_bookmark_at_line("view:1", 0)
    assert not store.has_bookmark_at_line("view:1", 1)
    assert store.for_document("src.log") == [source]
    assert {b.id for b in store.for_source("src.log")} == {source.id, mirror.id}


def test_update_moves_index_entries(store: BookmarkStore) -> None:
    source = store.add(_source(line=1))
    store.add(replace(source, line_number=4))

    assert store.source_bookmarks_at_line("src.log", 1) == []
    assert [b.line_number for b in store.source_bookmarks_at_line("src.log", 4)] == [4]
    assert len(store) == 1


def test_update_without_link_keeps_existing_link(store: BookmarkStore) -> None:
    source = store.add(_source())
    mirror = store.add(_mirror("view:1"))
    store.link(source.id, mirror.id)

    updated = store.add(replace(source, linked_id=None, line_number=2))

    assert updated.linked_id == mirror.id
    assert store.link_state(source.id, mirror.id) is LinkState.LINKED


def test_remove_clears_partner_back_reference(store: BookmarkStore) -> None:
    source = store.add(_source())
    mirror = store.add(_mirror("view:1"))
    store.link(source.id, mirror.id)

    store.remove(mirror.id)

    assert store.get(source.id).linked_id is None
    assert store.bookmarks_at_line("view:1", 0) == []


def test_remove_keeps_partner_pointing_elsewhere(store: BookmarkStore) -> None:
    source = store.add(_source())
    first = store.add(_mirror("view:1", linked_id=source.id))
    second = store.add(_mirror("view:2", linked_id=source.id))
    store.link(source.id, second.id)

    store.remove(first.id)

    assert store.get(source.id).linked_id == second.id


def test_remove_unknown_id_is_noop(store: BookmarkStore) -> None:
    store.add(_source())
    assert store.remove("missing") is None
    assert len(store) == 1


def test_query_filters(store: BookmarkStore) -> None:
    source = store.add(_source())
    other = store.add(_source(line=2, text="INFO end"))
    mirror = store.add(_mirror("view:1", linked_id=source.id))

    assert store.query(BookmarkQuery(anchor=SOURCE, source_uri="src.log")) == [source, other]
    assert store.query(BookmarkQuery(anchor=MirrorAnchor("view:1"))) == [mirror]
    assert store.query(BookmarkQuery(linked_id=source.id)) == [mirror]
    assert store.query(BookmarkQuery(line_text="INFO end")) == [other]
    assert store.query(BookmarkQuery(id=mirror.id)) == [mirror]
    assert store.query(BookmarkQuery(id=mirror.id, anchor=SOURCE)) == []
    assert store.query(BookmarkQuery(document_id="view:1", line_number=0)) == [mirror]
    assert store.query(BookmarkQuery(anchor=SOURCE, source_uri="src.log", line_number=2)) == [
        other
    ]


def test_query_by_occurrence_index(store: BookmarkStore) -> None:
    first = store.add(
        Bookmark(
            source_uri="src.log",
            line_number=0,
            line_text="A line",
            context=AnchorContext(occurrence_index=0),
        )
    )
    second = store.add(
        Bookmark(
            source_uri="src.log",
            line_number=3,
            line_text="A line",
            context=AnchorContext(occurrence_index=1),
        )
    )
    assert store.query(BookmarkQuery(source_uri="src.log", occurrence_index=1)) == [second]
    assert store.query(BookmarkQuery(source_uri="src.log", occurrence_index=0)) == [first]


def test_remove_with_related_cascades(store: BookmarkStore) -> None:
    source = store.add(_source())
    mirror = store.add(_mirror("view:1", linked_id=source.id))
    twin = store.add(_mirror("view:2"))
    unrelated = store.add(_source(line=2, text="INFO end"))
    store.link(source.id, mirror.id)

    removed = store.remove_with_related(source.id)

    assert {b.id for b in removed} == {source.id, mirror.id, twin.id}
    assert store.all() == [unrelated]


def test_remove_for_source_and_clear_document(store: BookmarkStore) -> None:
    store.add(_source())
    store.add(_mirror("view:1"))
    keep = store.add(_source(uri="other.log"))

    assert len(store.clear_document("view:1")) == 1
    assert len(store.remove_for_source("src.log")) == 1
    assert store.all() == [keep]

    store.clear()
    assert len(store) == 0


def test_link_state_transitions(store: BookmarkStore) -> None:
    source = store.add(_source())
    mirror = store.add(_mirror("view:1"))
    assert store.link_state(source.id, mirror.id) is LinkState.UNLINKED

    store.add(replace(mirror, linked_id=source.id))
    assert store.link_state(source.id, mirror.id) is LinkState.PENDING_LINK

    store.link(source.id, mirror.id)
    assert store.link_state(source.id, mirror.id) is LinkState.LINKED

    store.unlink(source.id)
    assert store.link_state(source.id, mirror.id) is LinkState.PENDING_LINK


def test_asymmetric_links(store: BookmarkStore) -> None:
    source = store.add(_source())
    primary = store.add(_mirror("view:1", linked_id=source.id))
    secondary = store.add(_mirror("view:2", linked_id=source.id))
    store.link(source.id, primary.id)
    assert store.asymmetric_links() == []

    dangling = store.add(_mirror("view:3", linked_id="gone"))
    assert store.asymmetric_links() == [(dangling, None)]

    store.remove(dangling.id)
    store.unlink(source.id)
    reported = {b.id for b, _ in store.asymmetric_links()}
    assert reported == {primary.id, secondary.id}
