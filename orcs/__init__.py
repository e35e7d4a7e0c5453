"""
ORCS: a flat-file card and tag store for document annotation.

Uploaded .txt/.csv files are wrapped in cards; typed tags are embedded in
the cards as inline ``[type:text](tag-id)`` markers and indexed together
with explicit connections between entity tags.

Quick Start:
    from orcs import Orcs, InsertTag

    with Orcs("~/cases/acme") as store:
        card = store.upload("brief.txt", b"Acme Corp acquired Globex.")
        store.create_tag(InsertTag("entity", "Acme Corp", references=[card.filename]))

CLI Usage:
    orcs upload brief.txt
    orcs tag list --type entity
    orcs index gc --dry-run

Default Store:
    ~/.orcs (created automatically).
    Override with ORCS_STORE_PATH or an explicit path argument.

Environment Variables:
    ORCS_STORE_PATH  - Override default store location
    ORCS_VERBOSE     - Set to 1 for debug logging in the CLI
"""

from .api import Orcs
from .analysis import AliasPolicy, ReferenceAnalysis
from .errors import (
    IntegrityMismatch,
    NotFound,
    OrcsError,
    OrphanedReference,
    RebuildInProgress,
    StructuralParseError,
    ValidationError,
)
from .types import (
    Card,
    Connection,
    Direction,
    EntityLink,
    InsertConnection,
    InsertTag,
    Tag,
)

__version__ = "0.1.0"
__all__ = [
    "Orcs",
    "AliasPolicy",
    "ReferenceAnalysis",
    "Card",
    "Connection",
    "Direction",
    "EntityLink",
    "InsertConnection",
    "InsertTag",
    "Tag",
    "OrcsError",
    "NotFound",
    "ValidationError",
    "StructuralParseError",
    "IntegrityMismatch",
    "RebuildInProgress",
    "OrphanedReference",
]
