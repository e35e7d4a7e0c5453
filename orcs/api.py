"""
Service root for an orcs store.

``Orcs`` owns the configuration, the card/tag/connection stores, the index
service and the analysis and merge engines. Every mutation goes through here
so the index snapshot is kept in step with the flat files.
"""

import logging
from pathlib import Path
from typing import Optional, Union

from .analysis import AliasPolicy, ReferenceAnalysis, ReferenceAnalyzer
from .card_store import CardStore
from .config import StoreConfig, load_or_create_config
from .connection_store import ConnectionStore
from .errors import NotFound
from .index_service import BrokenConnection, GcReport, IndexService, IndexSnapshot, IndexStats
from .markup import count_markers
from .merge import MergeEngine, MergePreview
from .tag_store import TagStore
from .types import (
    Card,
    Connection,
    DeletePreview,
    DeleteResult,
    InsertConnection,
    InsertTag,
    IntegrityReport,
    RestoreResult,
    Tag,
)

logger = logging.getLogger(__name__)


class Orcs:
    """
    An orcs store: cards, tags, connections and their index.

    Example:
        with Orcs("~/cases/acme") as o:
            card = o.upload("brief.txt", b"Acme Corp acquired Globex.")
            o.create_tag(InsertTag("entity", "Acme Corp", references=[card.filename]))
    """

    def __init__(
        self,
        store_path: Optional[Union[str, Path]] = None,
        *,
        config: Optional[StoreConfig] = None,
        auto_build: Optional[bool] = None,
    ) -> None:
        """
        Open (or create) a store.

        Args:
            store_path: Store directory; defaults to ORCS_STORE_PATH or ~/.orcs
            config: Pre-loaded config (skips reading orcs.toml)
            auto_build: Override ``index.auto_build`` for the delayed initial build
        """
        if config is None:
            path = Path(store_path).expanduser().resolve() if store_path is not None else None
            config = load_or_create_config(path)
        self._config = config
        self._store_path = Path(config.path)

        from .logging_config import configure_ops_log
        self._ops_log_handler = configure_ops_log(self._store_path)

        self.cards = CardStore(self._store_path, config.cards)
        self.tags = TagStore(self._store_path, self.cards)
        self.connections = ConnectionStore(self._store_path)
        self.index = IndexService(
            self._store_path,
            self.cards,
            self.tags,
            self.connections,
            poll_interval=config.index.poll_interval,
        )
        self.analyzer = ReferenceAnalyzer(self.cards, config.analysis)
        self.merger = MergeEngine(self.tags, self.connections)

        if auto_build is None:
            auto_build = config.index.auto_build
        if auto_build:
            self.index.schedule_initial_build(config.index.initial_build_delay)

    @property
    def store_path(self) -> Path:
        return self._store_path

    @property
    def config(self) -> StoreConfig:
        return self._config

    def _reindex_cards(self, names) -> None:
        for name in dict.fromkeys(names):
            path = self.cards.raw_dir / name
            if path.is_file():
                self.index.reindex_file(path)
            else:
                self.index.remove_from_index(path)

    # -------------------------------------------------------------------------
    # Documents
    # -------------------------------------------------------------------------

    def upload(self, filename: str, content: bytes) -> Card:
        """Store a .txt/.csv upload and create its card."""
        record, card = self.cards.save_upload(filename, content)
        self.index.reindex_file(Path(record.path))
        self.index.reindex_file(self.cards.card_path(card))
        return card

    def upload_file(self, path: Union[str, Path]) -> Card:
        path = Path(path)
        return self.upload(path.name, path.read_bytes())

    def list_cards(self) -> list[Card]:
        return self.cards.list_cards()

    def get_card(self, card_id: str) -> Card:
        return self.cards.read_card(card_id)

    def append_user_text(self, card_id: str, text: str) -> str:
        uuid = self.cards.append_user_text(card_id, text)
        self._reindex_cards([self.cards.read_card(uuid).filename])
        logger.info("Appended user text to card %s", uuid)
        return uuid

    def clear_user_added_text(self, card_id: str) -> str:
        uuid = self.cards.clear_user_added_text(card_id)
        self._reindex_cards([self.cards.read_card(uuid).filename])
        logger.info("Cleared user text on card %s", uuid)
        return uuid

    def update_card_metadata(self, card_id: str, **fields) -> Card:
        card = self.cards.update_card_metadata(card_id, **fields)
        self._reindex_cards([card.filename])
        logger.info("Updated metadata of card %s", card.uuid)
        return card

    def verify_integrity(self, card_id: str) -> IntegrityReport:
        return self.cards.verify_integrity(card_id)

    def restore_original_content(self, card_id: str) -> RestoreResult:
        result = self.cards.restore_original_content(card_id)
        if result.success and result.card_uuid:
            self._reindex_cards([self.cards.read_card(result.card_uuid).filename])
        return result

    def delete_document(self, name: str) -> DeleteResult:
        result = self.cards.delete_document(name)
        for path in result.deleted_paths:
            self.index.remove_from_index(Path(path))
        return result

    # -------------------------------------------------------------------------
    # Tags
    # -------------------------------------------------------------------------

    def create_tag(self, insert: InsertTag) -> Tag:
        tag = self.tags.create(insert)
        self.index.reindex_tag(tag.id, self.tags.tag_path(tag))
        self._reindex_cards(tag.card_filenames)
        return tag

    def get_tag(self, tag_id: str) -> Optional[Tag]:
        return self.tags.get(tag_id)

    def list_tags(self, tag_type: Optional[str] = None) -> list[Tag]:
        if tag_type:
            return self.tags.list_by_type(tag_type)
        return self.tags.list()

    def update_tag(self, tag_id: str, **changes) -> Tag:
        old_path = self.tags.find_tag_file(tag_id)
        tag = self.tags.update(tag_id, **changes)
        new_path = self.tags.tag_path(tag)
        if old_path is not None and old_path != new_path:
            self.index.remove_from_index(old_path)
        self.index.reindex_tag(tag.id, new_path)
        self._reindex_cards(tag.card_filenames)
        return tag

    def preview_delete_tag(self, tag_id: str) -> DeletePreview:
        """
        Counts of what deleting a tag would touch.

        Raises:
            NotFound: If the tag does not exist
        """
        tag = self.tags.require(tag_id)
        affected: list[str] = []
        markers = entries = 0
        for card in self.cards.list_cards():
            n = count_markers(card, tag_id)
            listed = sum(1 for e in card.tag_index if e.endswith(f"]({tag_id})"))
            if n or listed or card.filename in tag.card_filenames:
                affected.append(card.filename)
            markers += n
            entries += listed
        return DeletePreview(
            tag_id=tag_id,
            affected_cards=affected,
            marker_count=markers,
            connection_count=len(self.connections.list_for_tag(tag_id)),
            index_entries=entries,
        )

    def delete_tag(self, tag_id: str) -> bool:
        tag = self.tags.get(tag_id)
        if not self.tags.delete(tag_id):
            return False
        self.index.remove_tag_from_index(tag_id)
        if tag is not None:
            self._reindex_cards(tag.card_filenames)
        return True

    def merge_tags(
        self, master_id: str, merge_ids: list[str], *, dry_run: bool = False
    ) -> Union[Tag, MergePreview]:
        result = self.merger.merge(master_id, merge_ids, dry_run=dry_run)
        if dry_run:
            return result
        for tag_id in merge_ids:
            if tag_id != master_id:
                self.index.remove_tag_from_index(tag_id)
        self.index.reindex_tag(result.id, self.tags.tag_path(result))
        for rel in self.tags.list_by_type("relationship"):
            if any(link.entity_id == result.id for link in rel.connected_entities):
                self.index.reindex_tag(rel.id, self.tags.tag_path(rel))
        self._reindex_cards(result.card_filenames)
        return result

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    def create_connection(self, insert: InsertConnection) -> Connection:
        conn = self.connections.create(insert)
        self.index.refresh_connections()
        return conn

    def get_connection(self, conn_id: str) -> Optional[Connection]:
        return self.connections.get(conn_id)

    def list_connections(self, tag_id: Optional[str] = None) -> list[Connection]:
        if tag_id:
            return self.connections.list_for_tag(tag_id)
        return self.connections.list()

    def update_connection(self, conn_id: str, **changes) -> Connection:
        conn = self.connections.update(conn_id, **changes)
        self.index.refresh_connections()
        return conn

    def delete_connection(self, conn_id: str) -> bool:
        deleted = self.connections.delete(conn_id)
        if deleted:
            self.index.refresh_connections()
        return deleted

    # -------------------------------------------------------------------------
    # Index
    # -------------------------------------------------------------------------

    def get_index(self) -> IndexSnapshot:
        return self.index.get_index()

    def reindex(self, gc: bool = False, dry_run: bool = False) -> tuple[IndexSnapshot, Optional[GcReport]]:
        """Full rebuild, optionally preceded by garbage collection."""
        report = self.index.garbage_collect(dry_run=dry_run) if gc else None
        snapshot = self.index.get_index() if gc else self.index.build_full_index()
        return snapshot, report

    def broken_connections(self) -> list[BrokenConnection]:
        return self.index.validate_connections()

    def stats(self) -> IndexStats:
        return self.index.get_index().stats

    def graph_data(self) -> dict:
        """Nodes for tags and edges for connections. No layout."""
        snapshot = self.index.get_index()
        nodes = [
            {"id": t.id, "label": t.name, "type": t.type, "entity_type": t.entity_type}
            for t in snapshot.tags
        ]
        edges = [
            {
                "id": c.id,
                "source": c.source_entity_id,
                "target": c.target_entity_id,
                "relationship_id": c.relationship_id,
                "direction": c.direction,
                "strength": c.strength,
            }
            for c in snapshot.connections
        ]
        return {"nodes": nodes, "edges": edges}

    # -------------------------------------------------------------------------
    # Analysis
    # -------------------------------------------------------------------------

    def analyze_references(
        self,
        tag_id: str,
        policy: Optional[AliasPolicy] = None,
        context: str = "repository",
        filenames: Optional[list[str]] = None,
    ) -> ReferenceAnalysis:
        tag = self.tags.get(tag_id)
        if tag is None:
            raise NotFound("tag", tag_id)
        return self.analyzer.analyze(tag, policy, context, filenames)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Cancel the pending initial build and detach the ops log."""
        self.index.close()
        if self._ops_log_handler is not None:
            from .logging_config import remove_ops_log
            remove_ops_log(self._ops_log_handler)
            self._ops_log_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
