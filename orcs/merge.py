"""
Tag merge: absorb several tags into a master tag.

Steps run in a fixed order: union the data into the master, rewrite
connection endpoints and relationship links, re-embed the master into
every referenced card, then delete the merged tags (which strips their markers).
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Union

from .connection_store import ConnectionStore
from .errors import NotFound, ValidationError
from .staging import StagedWrite
from .tag_store import TagStore
from .types import Tag, dedupe

logger = logging.getLogger(__name__)


@dataclass
class MergePreview:
    """What a merge would do, without doing it."""
    master_id: str
    merge_ids: list[str]
    missing_ids: list[str]
    references: list[str]
    aliases: list[str]
    key_value_pairs: dict[str, str]
    description: str
    connections_rewritten: int = 0
    relationships_rewritten: int = 0
    affected_cards: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def merged_fields(master: Tag, others: list[Tag]) -> dict:
    """Union of master and others: ordered-set lists, later kv keys win, descriptions joined."""
    references = list(master.references)
    aliases = list(master.aliases)
    kv = dict(master.key_value_pairs)
    description = master.description or ""
    for tag in others:
        references.extend(tag.references)
        aliases.extend(tag.aliases)
        kv.update(tag.key_value_pairs)
        if tag.description and tag.description != description:
            description = f"{description}\n\n{tag.description}" if description else tag.description
    return {
        "references": dedupe(references),
        "aliases": dedupe(aliases),
        "key_value_pairs": kv,
        "description": description,
    }


class MergeEngine:
    def __init__(self, tags: TagStore, connections: ConnectionStore):
        self.tags = tags
        self.connections = connections

    def _resolve(self, master_id: str, merge_ids: list[str]) -> tuple[Tag, list[Tag], list[str]]:
        master = self.tags.get(master_id)
        if master is None:
            raise NotFound("tag", master_id)
        found: list[Tag] = []
        missing: list[str] = []
        for tag_id in dedupe(merge_ids):
            if tag_id == master_id:
                continue
            tag = self.tags.get(tag_id)
            if tag is None:
                missing.append(tag_id)
            else:
                found.append(tag)
        if not found:
            raise ValidationError("No valid tags to merge")
        return master, found, missing

    def merge(self, master_id: str, merge_ids: list[str], *, dry_run: bool = False) -> Union[Tag, MergePreview]:
        """
        Merge ``merge_ids`` into ``master_id``.

        The master's own id in ``merge_ids`` is ignored, as are ids that do
        not resolve.

        Raises:
            NotFound: If the master tag does not exist
            ValidationError: If no merge candidate resolves
        """
        master, others, missing = self._resolve(master_id, merge_ids)
        fields = merged_fields(master, others)
        other_ids = [t.id for t in others]

        if dry_run:
            rewrites = sum(
                1 for c in self.connections.list()
                if c.source_tag_id in other_ids or c.target_tag_id in other_ids
            )
            relinks = sum(
                1 for t in self.tags.list_by_type("relationship")
                if any(link.entity_id in other_ids for link in t.connected_entities)
            )
            return MergePreview(
                master_id=master.id,
                merge_ids=other_ids,
                missing_ids=missing,
                connections_rewritten=rewrites,
                relationships_rewritten=relinks,
                affected_cards=dedupe(
                    name for t in [master, *others] for name in t.card_filenames
                ),
                **fields,
            )

        updated = self.tags.update(master.id, **fields)
        rewritten = self.connections.rewrite_endpoints(other_ids, master.id)
        relinked = self.tags.relink_entities(other_ids, master.id)

        with StagedWrite() as staged:
            self.tags.stage_embed(updated, updated.card_filenames, staged)
        for tag_id in other_ids:
            self.tags.delete(tag_id)
        # Spans the merged tags held are free now
        with StagedWrite() as staged:
            self.tags.stage_embed(updated, updated.card_filenames, staged)

        logger.info(
            "Merged %d tags into %s (%d connections, %d relationships rewritten)",
            len(other_ids), updated, rewritten, len(relinked),
        )
        return updated
