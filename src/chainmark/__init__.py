"""Line bookmarks that stay anchored through edits and filtered views."""

from chainmark.core.anchor.matcher import AnchorMatcher
from chainmark.core.store.bookmark_store import BookmarkQuery, BookmarkStore
from chainmark.core.sync.coordinator import SyncCoordinator, SyncOutcome
from chainmark.core.throttle import ChangeThrottle
from chainmark.persistence import PathRewriter, StateFile
from chainmark.service import BookmarkService
from chainmark.workspace import Workspace

__all__ = [
    "AnchorMatcher",
    "BookmarkQuery",
    "BookmarkService",
    "BookmarkStore",
    "ChangeThrottle",
    "PathRewriter",
    "StateFile",
    "SyncCoordinator",
    "SyncOutcome",
    "Workspace",
]
