"""Configuration constants and tunables for chainmark."""

import os
from dataclasses import dataclass
from pathlib import Path

# Quiet period after the last edit before a re-anchor batch runs (seconds).
EDIT_QUIET_PERIOD: float = 0.25

# Minimum interval between two refresh signals (seconds).
REFRESH_INTERVAL: float = 0.1

# Lines captured on each side of an anchor when a fingerprint is taken.
CONTEXT_WINDOW: int = 5

# Documents longer than this get a bounded fuzzy search window.
LARGE_DOCUMENT_LINES: int = 1000
FUZZY_SEARCH_RADIUS: int = 100

# Truncation of derived view names; 0 disables truncation.
MAX_BASE_NAME_LENGTH: int = 70
MAX_CHAIN_DESCRIPTOR_LENGTH: int = 30

# Queries longer than this are shortened in chain descriptors.
DESCRIPTOR_QUERY_LENGTH: int = 15

# State file location, relative to the workspace root.
STATE_FILE_NAME: str = ".chainmark/bookmarks.json"
STATE_FILE_ENV: str = "CHAINMARK_STATE_FILE"

# Prefix for paths stored relative to the workspace root.
WORKSPACE_PREFIX: str = "${workspace}/"


@dataclass(frozen=True)
class MatchWeights:
    """Scoring constants used when re-locating a bookmark.

    The defaults are empirical; every value can be overridden.
    """

    min_text_length: int = 3
    exact_base: float = 100.0
    occurrence_match_bonus: float = 150.0
    occurrence_mismatch_penalty: float = 20.0
    context_weight: float = 50.0
    position_penalty: float = 100.0
    before_weight: float = 1.0
    after_weight: float = 1.5
    containment_weight: float = 0.5
    fuzzy_threshold: float = 0.7
    jaccard_share: float = 0.7
    levenshtein_share: float = 0.3
    levenshtein_max_length: int = 100
    fuzzy_context_scale: float = 0.8
    fuzzy_position_scale: float = 0.5


@dataclass(frozen=True)
class SyncSettings:
    """Tunables for the synchronization coordinator."""

    context_window: int = CONTEXT_WINDOW
    in_place_similarity: float = 0.6
    large_document_lines: int = LARGE_DOCUMENT_LINES
    fuzzy_search_radius: int = FUZZY_SEARCH_RADIUS


def resolve_state_file(root: Path) -> Path:
    """Return the state file for a workspace root.

    The ``CHAINMARK_STATE_FILE`` environment variable takes precedence.
    """
    override = os.environ.get(STATE_FILE_ENV)
    if override:
        return Path(override).expanduser()
    return root / STATE_FILE_NAME
