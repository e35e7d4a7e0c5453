"""
Master index: a derived, rebuildable snapshot of files, tags and connections.

The snapshot is never the source of truth. It is persisted to
``index.json`` for fast startup, and any missing, corrupt or
version-mismatched snapshot is replaced by a full rescan of the flat files.

Only one full build runs at a time. A caller that asks for a build while
one is in flight polls until it finishes and receives that snapshot.
"""

import json
import logging
import re
import threading
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

from .card_store import CardStore, describe_file
from .connection_store import ConnectionStore
from .errors import RebuildInProgress, StructuralParseError
from .markup import find_markers
from .staging import atomic_write
from .tag_store import TagStore
from .types import EntityLink, IndexState, Tag, utc_now

logger = logging.getLogger(__name__)

INDEX_VERSION = "2025.001"
INDEX_FILENAME = "index.json"

# Inconsistency kinds
ORPHANED_REFERENCE = "orphaned_reference"
DANGLING_MARKER = "dangling_marker"
MARKER_TYPE_MISMATCH = "marker_type_mismatch"
MISSING_SOURCE = "missing_source"
UNPARSEABLE_TAG = "unparseable_tag"
UNPARSEABLE_CARD = "unparseable_card"

# Marker type tokens that stand for a tag type
_MARKER_TYPE_EQUIVALENTS = {"kv": "kv_pair"}


def _camel(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(p.title() for p in rest)


def _snake(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def _camelize(value):
    if isinstance(value, dict):
        return {_camel(k): _camelize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_camelize(v) for v in value]
    return value


def _snakify(data: dict) -> dict:
    return {_snake(k): v for k, v in data.items()}


@dataclass
class IndexedFile:
    id: str
    name: str
    path: str
    type: str
    size: int
    hash: str
    created: str
    modified: str
    card_uuid: Optional[str] = None
    source_file: Optional[str] = None


@dataclass
class IndexedTag:
    id: str
    name: str
    type: str
    file_path: str
    references: list[str] = field(default_factory=list)
    aliases: list[str] = field(default_factory=list)
    entity_type: Optional[str] = None
    ui_type: Optional[str] = None
    connected_entities: list[EntityLink] = field(default_factory=list)

    @classmethod
    def from_tag(cls, tag: Tag, path: Path) -> "IndexedTag":
        return cls(
            id=tag.id,
            name=tag.name,
            type=tag.type,
            file_path=str(path),
            references=list(tag.references),
            aliases=list(tag.aliases),
            entity_type=tag.entity_type,
            ui_type=tag.ui_type,
            connected_entities=list(tag.connected_entities),
        )

    @classmethod
    def from_dict(cls, data: dict) -> "IndexedTag":
        data = _snakify(data)
        links = [
            EntityLink(**_snakify(link)) for link in data.pop("connected_entities", [])
        ]
        return cls(**data, connected_entities=links)

    @property
    def card_filenames(self) -> list[str]:
        return Tag(self.id, self.type, self.name, references=self.references).card_filenames


@dataclass
class IndexedConnection:
    """An edge between two entity tags, from a relationship tag or the connection store."""
    id: str
    source_entity_id: str
    target_entity_id: str
    relationship_id: Optional[str]
    direction: int
    file_path: str
    origin: str = "relationship_tag"
    strength: float = 1.0


@dataclass
class BrokenConnection:
    connection_id: str
    reason: str
    details: str
    file_path: str


@dataclass
class Inconsistency:
    """A detected disagreement between files. Reported, never auto-fixed except by GC."""
    kind: str
    subject: str
    detail: str
    file_path: str = ""
    reference: Optional[str] = None


@dataclass
class IndexStats:
    total_files: int = 0
    total_tags: int = 0
    total_connections: int = 0
    broken_connection_count: int = 0
    entity_count: int = 0
    relationship_count: int = 0
    inconsistency_count: int = 0


@dataclass
class IndexSnapshot:
    version: str = INDEX_VERSION
    last_updated: str = ""
    files: list[IndexedFile] = field(default_factory=list)
    tags: list[IndexedTag] = field(default_factory=list)
    connections: list[IndexedConnection] = field(default_factory=list)
    broken_connections: list[BrokenConnection] = field(default_factory=list)
    inconsistencies: list[Inconsistency] = field(default_factory=list)
    stats: IndexStats = field(default_factory=IndexStats)

    def to_dict(self) -> dict:
        """JSON-ready dict with camelCase keys."""
        return _camelize(asdict(self))

    @classmethod
    def from_dict(cls, data: dict) -> "IndexSnapshot":
        return cls(
            version=data["version"],
            last_updated=data.get("lastUpdated", ""),
            files=[IndexedFile(**_snakify(f)) for f in data.get("files", [])],
            tags=[IndexedTag.from_dict(t) for t in data.get("tags", [])],
            connections=[IndexedConnection(**_snakify(c)) for c in data.get("connections", [])],
            broken_connections=[
                BrokenConnection(**_snakify(b)) for b in data.get("brokenConnections", [])
            ],
            inconsistencies=[
                Inconsistency(**_snakify(i)) for i in data.get("inconsistencies", [])
            ],
            stats=IndexStats(**_snakify(data.get("stats", {}))),
        )

    def tag(self, tag_id: str) -> Optional[IndexedTag]:
        for t in self.tags:
            if t.id == tag_id:
                return t
        return None

    def recompute_stats(self) -> None:
        self.stats = IndexStats(
            total_files=len(self.files),
            total_tags=len(self.tags),
            total_connections=len(self.connections),
            broken_connection_count=len(self.broken_connections),
            entity_count=sum(1 for t in self.tags if t.type == "entity"),
            relationship_count=sum(1 for t in self.tags if t.type == "relationship"),
            inconsistency_count=len(self.inconsistencies),
        )


@dataclass
class GcReport:
    """What garbage collection removed, or would remove on a dry run."""
    dry_run: bool
    orphaned_references: int = 0
    tags_rewritten: int = 0
    tags_deleted: int = 0
    details: list[Inconsistency] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class IndexService:
    """
    Owns the in-memory snapshot and its persistence.

    Args:
        root: Store root (``index.json`` lives here)
        cards, tags, connections: The stores the index is derived from
        poll_interval: Seconds between checks while waiting on another build
    """

    def __init__(
        self,
        root: Path,
        cards: CardStore,
        tags: TagStore,
        connections: ConnectionStore,
        poll_interval: float = 0.1,
    ):
        self.root = Path(root)
        self.path = self.root / INDEX_FILENAME
        self.cards = cards
        self.tags = tags
        self.connections = connections
        self.poll_interval = poll_interval
        self._snapshot: Optional[IndexSnapshot] = None
        self._lock = threading.Lock()
        self._building = False
        self._timer: Optional[threading.Timer] = None

    @property
    def state(self) -> IndexState:
        if self._building:
            return IndexState.BUILDING
        if self._snapshot is None:
            return IndexState.UNINITIALIZED
        return IndexState.READY

    # -------------------------------------------------------------------------
    # Startup
    # -------------------------------------------------------------------------

    def schedule_initial_build(self, delay: float) -> None:
        """Start a best-effort background load/build after ``delay`` seconds."""
        self._timer = threading.Timer(delay, self._initial_build_safe)
        self._timer.daemon = True
        self._timer.start()

    def _initial_build_safe(self) -> None:
        """Background-safe wrapper for the initial build. Logs failures."""
        try:
            self.get_index()
        except Exception as e:
            logger.warning("Initial index build failed: %s", e)

    def close(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    # -------------------------------------------------------------------------
    # Load / save
    # -------------------------------------------------------------------------

    def get_index(self) -> IndexSnapshot:
        """Current snapshot: in memory, else from index.json, else a full build."""
        if self._snapshot is not None:
            return self._snapshot
        return self.load_index()

    def load_index(self) -> IndexSnapshot:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            if data.get("version") == INDEX_VERSION:
                self._snapshot = IndexSnapshot.from_dict(data)
                return self._snapshot
            logger.info("Index version %s != %s, rebuilding", data.get("version"), INDEX_VERSION)
        except FileNotFoundError:
            pass
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning("Discarding unreadable index snapshot: %s", e)
        return self.build_full_index()

    def save_index(self, snapshot: IndexSnapshot) -> None:
        """Persist the snapshot. Failures are logged, not raised."""
        try:
            atomic_write(self.path, json.dumps(snapshot.to_dict(), indent=2) + "\n")
        except OSError as e:
            logger.error("Failed to save index snapshot: %s", e)

    # -------------------------------------------------------------------------
    # Full build
    # -------------------------------------------------------------------------

    def build_full_index(self, wait: bool = True) -> IndexSnapshot:
        """
        Rescan everything, persist, and return the new snapshot.

        A call made while another build is running polls until that build
        finishes and returns its snapshot instead of starting a second scan.

        Raises:
            RebuildInProgress: If a build is running and ``wait`` is False
        """
        with self._lock:
            already_building = self._building
            self._building = True
        if already_building:
            if not wait:
                raise RebuildInProgress("Index build already in progress")
            while self._building:
                time.sleep(self.poll_interval)
            if self._snapshot is not None:
                return self._snapshot
            return self.build_full_index(wait=wait)

        logger.info("Starting full index build")
        try:
            snapshot = self._scan()
            self.save_index(snapshot)
            self._snapshot = snapshot
        finally:
            with self._lock:
                self._building = False
        logger.info(
            "Index built: %d files, %d tags, %d connections, %d broken, %d inconsistencies",
            snapshot.stats.total_files,
            snapshot.stats.total_tags,
            snapshot.stats.total_connections,
            snapshot.stats.broken_connection_count,
            snapshot.stats.inconsistency_count,
        )
        return snapshot

    def _scan(self) -> IndexSnapshot:
        self.cards.migrate_legacy_cards()
        snapshot = IndexSnapshot()
        snapshot.files = [f for f in (self._index_file(p) for p in self.cards.list_raw_files()) if f]

        tags_by_id: dict[str, IndexedTag] = {}
        for path in self.tags.tag_files():
            tag = self.tags.load(path)
            if tag is None:
                snapshot.inconsistencies.append(Inconsistency(
                    UNPARSEABLE_TAG, path.name, "tag file could not be parsed", str(path)
                ))
                continue
            if tag.id in tags_by_id:
                continue
            current = self.tags.find_tag_file(tag.id) or path
            tags_by_id[tag.id] = IndexedTag.from_tag(tag, current)
        snapshot.tags = list(tags_by_id.values())

        for path in self.cards.list_card_paths():
            snapshot.inconsistencies.extend(self._card_inconsistencies(path, tags_by_id))

        self._rebuild_connections(snapshot)
        self._refresh_orphans(snapshot)
        snapshot.last_updated = utc_now()
        snapshot.recompute_stats()
        return snapshot

    def _index_file(self, path: Path) -> Optional[IndexedFile]:
        try:
            record = describe_file(path, self.root)
        except OSError as e:
            logger.warning("Skipping %s: %s", path.name, e)
            return None
        return IndexedFile(
            id=record.id,
            name=record.name,
            path=record.path,
            type=record.kind,
            size=record.size,
            hash=record.hash,
            created=record.created,
            modified=record.modified,
            card_uuid=record.card_uuid,
            source_file=record.source_file,
        )

    def _card_inconsistencies(self, path: Path, tags_by_id: dict[str, IndexedTag]) -> list[Inconsistency]:
        try:
            card = self.cards.load_card(path)
        except StructuralParseError as e:
            return [Inconsistency(UNPARSEABLE_CARD, path.name, e.detail, str(path))]
        except OSError as e:
            logger.warning("Skipping card %s: %s", path.name, e)
            return []

        found: list[Inconsistency] = []
        if card.source_file and not self.cards.source_path(card).is_file():
            found.append(Inconsistency(
                MISSING_SOURCE, path.name, f"source file {card.source_file} is missing",
                str(path), card.source_file,
            ))
        seen: set[tuple[str, str]] = set()
        for region in card.regions().values():
            for marker in find_markers(region):
                if (marker.id, marker.type) in seen:
                    continue
                seen.add((marker.id, marker.type))
                tag = tags_by_id.get(marker.id)
                if tag is None:
                    found.append(Inconsistency(
                        DANGLING_MARKER, path.name, f"marker [{marker.type}:{marker.text}] has no tag",
                        str(path), marker.id,
                    ))
                elif not _marker_matches(marker.type, tag):
                    found.append(Inconsistency(
                        MARKER_TYPE_MISMATCH, path.name,
                        f"marker type {marker.type} differs from tag type {tag.type}",
                        str(path), marker.id,
                    ))
        return found

    def _refresh_orphans(self, snapshot: IndexSnapshot) -> None:
        """Recompute orphaned references and drop dangling markers that now resolve."""
        card_names = {f.name for f in snapshot.files if f.type == "orcs_card"}
        tag_ids = {t.id for t in snapshot.tags}
        kept = [
            i for i in snapshot.inconsistencies
            if i.kind != ORPHANED_REFERENCE
            and not (i.kind == DANGLING_MARKER and i.reference in tag_ids)
        ]
        for tag in snapshot.tags:
            for name in tag.card_filenames:
                if name not in card_names:
                    kept.append(Inconsistency(
                        ORPHANED_REFERENCE, tag.id, f"tag {tag.name} references missing card {name}",
                        tag.file_path, name,
                    ))
        snapshot.inconsistencies = kept

    def _rebuild_connections(self, snapshot: IndexSnapshot) -> None:
        connections, broken = self._derive_connections(snapshot.tags)
        snapshot.connections = connections
        snapshot.broken_connections = broken

    def _derive_connections(self, tags: list[IndexedTag]) -> tuple[list[IndexedConnection], list[BrokenConnection]]:
        entity_ids = {t.id for t in tags if t.type == "entity"}
        connections: list[IndexedConnection] = []
        broken: list[BrokenConnection] = []

        def check(conn_id, source, target, path) -> bool:
            if source not in entity_ids:
                broken.append(BrokenConnection(
                    conn_id, "missing_source", f"Source entity {source} not found", path
                ))
                return False
            if target not in entity_ids:
                broken.append(BrokenConnection(
                    conn_id, "missing_target", f"Target entity {target} not found", path
                ))
                return False
            return True

        for tag in tags:
            if tag.type != "relationship":
                continue
            links = tag.connected_entities
            for i in range(len(links) - 1):
                for j in range(i + 1, len(links)):
                    source, target = links[i], links[j]
                    conn_id = f"{source.entity_id}-{tag.id}-{target.entity_id}"
                    if check(conn_id, source.entity_id, target.entity_id, tag.file_path):
                        connections.append(IndexedConnection(
                            id=conn_id,
                            source_entity_id=source.entity_id,
                            target_entity_id=target.entity_id,
                            relationship_id=tag.id,
                            direction=max(int(source.direction), int(target.direction)),
                            file_path=tag.file_path,
                        ))

        for conn in self.connections.list():
            path = str(self.connections.dir / f"{conn.id}.json")
            if check(conn.id, conn.source_tag_id, conn.target_tag_id, path):
                connections.append(IndexedConnection(
                    id=conn.id,
                    source_entity_id=conn.source_tag_id,
                    target_entity_id=conn.target_tag_id,
                    relationship_id=conn.relationship_tag_id,
                    direction=int(conn.direction),
                    file_path=path,
                    origin="connection_store",
                    strength=conn.strength,
                ))
        return connections, broken

    # -------------------------------------------------------------------------
    # Incremental updates
    # -------------------------------------------------------------------------

    def _touch(self, snapshot: IndexSnapshot) -> None:
        self._refresh_orphans(snapshot)
        snapshot.last_updated = utc_now()
        snapshot.recompute_stats()
        self.save_index(snapshot)

    def _snapshot_for_update(self) -> IndexSnapshot:
        """
        The snapshot an incremental update lands on.

        Waits out a running build so the change is applied to its result, and
        loads index.json when nothing is in memory yet. Updates replace whole
        entries, so applying one to a snapshot that already holds it is harmless.
        """
        while self._building:
            time.sleep(self.poll_interval)
        return self.get_index()

    def reindex_file(self, path: Path) -> None:
        """Refresh one raw file's record (and, for cards, its inconsistencies)."""
        snapshot = self._snapshot_for_update()
        path = Path(path)
        record = self._index_file(path)
        snapshot.files = [f for f in snapshot.files if f.path != str(path)]
        if record is not None:
            snapshot.files.append(record)
        snapshot.inconsistencies = [
            i for i in snapshot.inconsistencies
            if not (i.file_path == str(path) and i.kind != ORPHANED_REFERENCE)
        ]
        if record is not None and record.type == "orcs_card":
            tags_by_id = {t.id: t for t in snapshot.tags}
            snapshot.inconsistencies.extend(self._card_inconsistencies(path, tags_by_id))
        self._touch(snapshot)

    def remove_from_index(self, path: Path) -> None:
        snapshot = self._snapshot_for_update()
        path_str = str(path)
        snapshot.files = [f for f in snapshot.files if f.path != path_str]
        removed_tags = [t for t in snapshot.tags if t.file_path == path_str]
        snapshot.tags = [t for t in snapshot.tags if t.file_path != path_str]
        snapshot.inconsistencies = [i for i in snapshot.inconsistencies if i.file_path != path_str]
        if any(t.type in ("entity", "relationship") for t in removed_tags):
            self._rebuild_connections(snapshot)
        self._touch(snapshot)

    def reindex_tag(self, tag_id: str, path: Optional[Path] = None) -> None:
        """Refresh one tag's entry. Entity/relationship changes rebuild the connection graph."""
        snapshot = self._snapshot_for_update()
        path = Path(path) if path is not None else self.tags.find_tag_file(tag_id)
        tag = self.tags.load(path) if path is not None else None
        old = snapshot.tag(tag_id)
        snapshot.tags = [t for t in snapshot.tags if t.id != tag_id]
        if old is not None:
            snapshot.inconsistencies = [
                i for i in snapshot.inconsistencies
                if not (i.kind == UNPARSEABLE_TAG and i.file_path == old.file_path)
            ]
        if tag is None:
            if path is not None:
                snapshot.inconsistencies.append(Inconsistency(
                    UNPARSEABLE_TAG, path.name, "tag file could not be parsed", str(path)
                ))
        else:
            snapshot.tags.append(IndexedTag.from_tag(tag, self.tags.find_tag_file(tag_id) or path))
        types = {t.type for t in (old, tag) if t is not None}
        if types & {"entity", "relationship"}:
            self._rebuild_connections(snapshot)
        self._touch(snapshot)

    def remove_tag_from_index(self, tag_id: str) -> None:
        snapshot = self._snapshot_for_update()
        snapshot.tags = [t for t in snapshot.tags if t.id != tag_id]
        self._rebuild_connections(snapshot)
        self._touch(snapshot)

    def refresh_connections(self) -> None:
        """Re-derive the connection graph after connection-store changes."""
        snapshot = self._snapshot_for_update()
        self._rebuild_connections(snapshot)
        self._touch(snapshot)

    def validate_connections(self) -> list[BrokenConnection]:
        snapshot = self.get_index()
        self._rebuild_connections(snapshot)
        snapshot.recompute_stats()
        self.save_index(snapshot)
        return list(snapshot.broken_connections)

    # -------------------------------------------------------------------------
    # Garbage collection
    # -------------------------------------------------------------------------

    def garbage_collect(self, dry_run: bool = False) -> GcReport:
        """
        Remove tag references to cards that no longer exist.

        Every orphan reported by a fresh build is re-checked against the
        filesystem first, so a resolvable reference is never removed. A tag
        left with no references is deleted. A dry run reports the same counts
        without writing.
        """
        snapshot = self.build_full_index()
        report = GcReport(dry_run=dry_run)
        dead_by_tag: dict[str, set[str]] = {}
        for item in snapshot.inconsistencies:
            if item.kind != ORPHANED_REFERENCE or not item.reference:
                continue
            if (self.cards.raw_dir / item.reference).is_file():
                continue
            dead_by_tag.setdefault(item.subject, set()).add(item.reference)
            report.details.append(item)
        report.orphaned_references = len(report.details)

        for tag_id, dead in dead_by_tag.items():
            entry = snapshot.tag(tag_id)
            survivors = [r for r in entry.card_filenames if r not in dead] if entry else []
            if survivors:
                report.tags_rewritten += 1
            else:
                report.tags_deleted += 1
            if dry_run:
                continue
            tag = self.tags.get(tag_id)
            if tag is not None:
                self.tags.drop_references(tag, dead)

        if not dry_run and dead_by_tag:
            logger.info(
                "GC removed %d orphaned references (%d tags rewritten, %d deleted)",
                report.orphaned_references, report.tags_rewritten, report.tags_deleted,
            )
            self.build_full_index()
        return report


def _marker_matches(marker_type: str, tag: IndexedTag) -> bool:
    marker_type = _MARKER_TYPE_EQUIVALENTS.get(marker_type, marker_type)
    return marker_type in (tag.type, tag.ui_type)
