"""
Data types for the ORCS card and tag store.
"""

import re
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Optional


# Tag categories, each stored in its own directory
TAG_TYPES = ("entity", "relationship", "attribute", "comment", "kv_pair")

# UI-level refinements; stored as an additive field, never as a type
UI_TAG_TYPES = frozenset({"label", "data"})

# Type tokens accepted inside card markers. "kv" is the short form older
# cards used for kv_pair.
MARKER_TYPES = TAG_TYPES + ("kv", "label", "data")

TAG_DIRECTORIES = {
    "entity": "entities",
    "relationship": "relationships",
    "attribute": "attributes",
    "comment": "comments",
    "kv_pair": "kv_pairs",
}

TAG_EXTENSIONS = {
    "entity": "entity.txt",
    "relationship": "relate.txt",
    "attribute": "attrib.txt",
    "comment": "comment.txt",
    "kv_pair": "kv.txt",
}

LEGACY_TAG_EXTENSION = "orcs"

CARD_EXTENSION = ".card.txt"
LEGACY_CARD_EXTENSION = ".yaml.txt"
SOURCE_EXTENSIONS = (".txt", ".csv")

MAX_NAME_LENGTH = 512


def utc_now() -> str:
    """Current UTC timestamp in ISO format with millisecond precision and 'Z'."""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def new_id() -> str:
    """Fresh stable identifier for a tag, card or connection."""
    return str(uuid.uuid4())


_UNSAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9.-]")


def sanitize_filename(name: str) -> str:
    """Replace anything outside [A-Za-z0-9.-] with underscores."""
    return _UNSAFE_FILENAME_RE.sub("_", name)


def reference_target(reference: str) -> str:
    """Card filename a tag reference points at.

    Older tags stored positional references such as ``brief.txt@10-19`` or
    ``data.csv[2,3]``; only the filename part identifies the card.
    """
    ref = reference.strip()
    for sep in ("@", "["):
        if sep in ref:
            ref = ref.split(sep, 1)[0]
    return ref


def dedupe(values) -> list[str]:
    """Ordered de-duplication, dropping empty strings."""
    seen: set[str] = set()
    out: list[str] = []
    for value in values:
        if not value or value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out


class Direction(IntEnum):
    """Direction of a graph edge."""
    NONE = 0
    FORWARD = 1
    BACKWARD = 2
    BIDIRECTIONAL = 3


class IndexState(str, Enum):
    UNINITIALIZED = "uninitialized"
    BUILDING = "building"
    READY = "ready"


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EntityLink:
    """An entity taking part in a relationship tag."""
    entity_id: str
    direction: int = Direction.FORWARD


@dataclass(frozen=True)
class Tag:
    """
    A typed annotation record, persisted as one file.

    Attributes:
        id: Stable identifier, never changes
        type: One of TAG_TYPES
        name: Display name, also the primary search term
        references: Card filenames the tag is embedded in
        aliases: Additional search terms
        key_value_pairs: Free-form metadata
        entity_type: Subtype within the category (person, organization, ...)
        connected_entities: Relationship tags only; entities the relationship joins
    """
    id: str
    type: str
    name: str
    references: list[str] = field(default_factory=list)
    aliases: list[str] = field(default_factory=list)
    key_value_pairs: dict[str, str] = field(default_factory=dict)
    description: str = ""
    entity_type: Optional[str] = None
    created: str = ""
    modified: str = ""
    pair_key: Optional[str] = None
    pair_value: Optional[str] = None
    data_type: Optional[str] = None
    ui_type: Optional[str] = None
    connected_entities: list[EntityLink] = field(default_factory=list)

    @property
    def search_terms(self) -> list[str]:
        """Name first, then aliases."""
        return dedupe([self.name, *self.aliases])

    @property
    def card_filenames(self) -> list[str]:
        return dedupe(reference_target(r) for r in self.references)

    @property
    def index_entry(self) -> str:
        """The ``[type:name](id)`` line a card's tag index carries."""
        return f"[{self.type}:{self.name}]({self.id})"

    def to_dict(self) -> dict:
        return asdict(self)

    def __str__(self) -> str:
        return f"{self.type}:{self.name} ({self.id})"


@dataclass
class InsertTag:
    """Fields accepted when creating a tag. id and timestamps are assigned."""
    type: str
    name: str
    references: list[str] = field(default_factory=list)
    aliases: list[str] = field(default_factory=list)
    key_value_pairs: dict[str, str] = field(default_factory=dict)
    description: str = ""
    entity_type: Optional[str] = None
    pair_key: Optional[str] = None
    pair_value: Optional[str] = None
    data_type: Optional[str] = None
    ui_type: Optional[str] = None
    connected_entities: list[EntityLink] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Cards and files
# ---------------------------------------------------------------------------

@dataclass
class Card:
    """
    A document envelope wrapping one uploaded file.

    The three regions are kept separately; ``original`` is the verbatim
    source text plus any inline markers.
    """
    uuid: str
    filename: str
    source_file: str
    source_hash: str
    created: str
    modified: str
    original: str
    tag_index: list[str] = field(default_factory=list)
    user_added: Optional[str] = None
    source_reference: str = ""
    classification: str = ""
    handling: list[str] = field(default_factory=list)
    analyst: str = ""
    file_type: str = "txt"
    file_size: int = 0
    version: str = "2025.003"
    extra: dict = field(default_factory=dict)

    def regions(self) -> dict[str, str]:
        """Content regions that carry markers, by name."""
        out = {"original": self.original}
        if self.user_added is not None:
            out["user_added"] = self.user_added
        return out


@dataclass(frozen=True)
class FileRecord:
    """A physical file in the store."""
    id: str
    name: str
    path: str
    kind: str
    size: int
    created: str
    modified: str
    hash: str = ""
    card_uuid: Optional[str] = None
    source_file: Optional[str] = None


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Connection:
    """An explicit edge between two entity tags."""
    id: str
    source_tag_id: str
    target_tag_id: str
    relationship_tag_id: Optional[str] = None
    attribute_tag_ids: list[str] = field(default_factory=list)
    kind: str = "entity_relationship"
    direction: int = Direction.FORWARD
    strength: float = 1.0
    notes: str = ""
    created: str = ""
    modified: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class InsertConnection:
    source_tag_id: str
    target_tag_id: str
    relationship_tag_id: Optional[str] = None
    attribute_tag_ids: list[str] = field(default_factory=list)
    kind: str = "entity_relationship"
    direction: int = Direction.FORWARD
    strength: float = 1.0
    notes: str = ""


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class IntegrityReport:
    """Outcome of comparing a card's original region with its source."""
    valid: bool
    missing_tokens: list[str]
    source_file: str
    source_hash_matches: Optional[bool] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class RestoreResult:
    success: bool
    message: str
    card_uuid: Optional[str] = None


@dataclass(frozen=True)
class DeleteResult:
    """What a cascading document delete removed."""
    success: bool
    deleted_paths: list[str] = field(default_factory=list)
    card_uuid: Optional[str] = None
    card_filename: Optional[str] = None


@dataclass(frozen=True)
class DeletePreview:
    """Dry-run summary of deleting a tag."""
    tag_id: str
    affected_cards: list[str]
    marker_count: int
    connection_count: int
    index_entries: int

    def to_dict(self) -> dict:
        return asdict(self)
