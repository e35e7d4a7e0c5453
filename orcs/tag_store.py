"""
Tag store: one file per tag, grouped in a directory per tag type.

Creating a tag embeds it into every card it references; deleting a tag
strips its markers from those cards before the tag file goes away. Card
rewrites and the tag file change are committed together through a
StagedWrite.
"""

from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import Callable, Optional

from . import markup
from .card_store import CardStore, read_text
from .errors import NotFound, StructuralParseError, ValidationError
from .staging import StagedWrite, atomic_write
from .tag_format import CURRENT_FORMAT, detect_format, parse_tag, render_tag
from .types import (
    CARD_EXTENSION,
    LEGACY_TAG_EXTENSION,
    MAX_NAME_LENGTH,
    TAG_DIRECTORIES,
    TAG_EXTENSIONS,
    TAG_TYPES,
    UI_TAG_TYPES,
    Direction,
    EntityLink,
    InsertTag,
    Tag,
    dedupe,
    new_id,
    reference_target,
    sanitize_filename,
    utc_now,
)

logger = logging.getLogger(__name__)

# Longest sanitised name prefix used in a tag filename
_FILENAME_NAME_LIMIT = 64

# Fields update() accepts
UPDATABLE_FIELDS = frozenset({
    "name",
    "references",
    "aliases",
    "key_value_pairs",
    "description",
    "entity_type",
    "pair_key",
    "pair_value",
    "data_type",
    "ui_type",
    "connected_entities",
})


def _check_term(value: str, what: str) -> None:
    if "]" in value or "\n" in value or "\r" in value:
        raise ValidationError(f"{what} may not contain ']' or line breaks: {value!r}")
    if len(value) > MAX_NAME_LENGTH:
        raise ValidationError(f"{what} is longer than {MAX_NAME_LENGTH} characters")


def validate_tag(
    type: str,
    name: str,
    references: list[str],
    aliases: list[str],
    key_value_pairs: dict[str, str],
    pair_key: Optional[str] = None,
    ui_type: Optional[str] = None,
    connected_entities: Optional[list[EntityLink]] = None,
) -> None:
    """
    Check tag fields before anything is written.

    Raises:
        ValidationError: On the first problem found
    """
    if type not in TAG_TYPES:
        raise ValidationError(f"Unknown tag type: {type!r} (expected one of {', '.join(TAG_TYPES)})")
    if not name or not name.strip():
        raise ValidationError("Tag name is required")
    _check_term(name, "Tag name")
    for alias in aliases:
        _check_term(alias, "Alias")
    if not [r for r in references if r and r.strip()]:
        raise ValidationError("A tag needs at least one card reference")
    for key, value in key_value_pairs.items():
        if not key or ":" in key or "\n" in key:
            raise ValidationError(f"Invalid key in key_value_pairs: {key!r}")
        if "\n" in str(value):
            raise ValidationError(f"Value for {key!r} may not contain line breaks")
    if type == "kv_pair" and not (pair_key and pair_key.strip()):
        raise ValidationError("kv_pair tags need a pair_key")
    if ui_type is not None and ui_type not in UI_TAG_TYPES:
        raise ValidationError(f"Unknown ui_type: {ui_type!r}")
    for link in connected_entities or []:
        if not link.entity_id:
            raise ValidationError("Connected entity id is required")
        if link.direction not in tuple(Direction):
            raise ValidationError(f"Direction must be 0-3, got {link.direction!r}")


def _coerce_links(values) -> list[EntityLink]:
    links = []
    for value in values or []:
        if isinstance(value, EntityLink):
            links.append(value)
        elif isinstance(value, dict):
            links.append(EntityLink(value["entity_id"], int(value.get("direction", Direction.FORWARD))))
        else:
            entity_id, direction = value
            links.append(EntityLink(entity_id, int(direction)))
    return links


class TagStore:
    """
    Filesystem-backed tag store.

    Args:
        root: Store root; tag files live in its per-type directories
        cards: Card store used for embedding and stripping markers
    """

    def __init__(self, root: Path, cards: CardStore):
        self.root = Path(root)
        self.cards = cards
        for directory in TAG_DIRECTORIES.values():
            (self.root / directory).mkdir(parents=True, exist_ok=True)
        # Detected format -> upgrade applied before the file is rewritten
        self.migrations: dict[int, Callable[[Tag], Tag]] = {
            1: self._upgrade_v1,
        }

    # -------------------------------------------------------------------------
    # Paths
    # -------------------------------------------------------------------------

    def tag_dir(self, tag_type: str) -> Path:
        return self.root / TAG_DIRECTORIES[tag_type]

    def tag_path(self, tag: Tag) -> Path:
        """Canonical path: ``<sanitised-name>_<id>.<ext>`` in the type directory."""
        stem = sanitize_filename(tag.name)[:_FILENAME_NAME_LIMIT] or "tag"
        return self.tag_dir(tag.type) / f"{stem}_{tag.id}.{TAG_EXTENSIONS[tag.type]}"

    def tag_files(self, tag_type: Optional[str] = None) -> list[Path]:
        """Every tag file (current and legacy extensions), sorted per directory."""
        types = [tag_type] if tag_type else list(TAG_TYPES)
        out: list[Path] = []
        for t in types:
            suffixes = ("." + TAG_EXTENSIONS[t], "." + LEGACY_TAG_EXTENSION)
            try:
                entries = sorted(self.tag_dir(t).iterdir())
            except OSError as e:
                logger.warning("Cannot read %s: %s", self.tag_dir(t), e)
                continue
            out.extend(
                p for p in entries
                if p.is_file() and not p.name.startswith(".") and p.name.endswith(suffixes)
            )
        return out

    def find_tag_file(self, tag_id: str) -> Optional[Path]:
        """Locate a tag's file by id: filename suffix first, then file contents."""
        if not tag_id:
            return None
        files = self.tag_files()
        for path in files:
            for t, ext in TAG_EXTENSIONS.items():
                if path.name.endswith(f"_{tag_id}.{ext}"):
                    return path
            if path.name.endswith(f"_{tag_id}.{LEGACY_TAG_EXTENSION}"):
                return path
        for path in files:
            try:
                text = read_text(path)
            except OSError:
                continue
            if f"UUID: {tag_id}" in text:
                tag = parse_tag(text)
                if tag is not None and tag.id == tag_id:
                    return path
        return None

    # -------------------------------------------------------------------------
    # Reading and migration
    # -------------------------------------------------------------------------

    def _resolve_reference(self, reference: str) -> str:
        """Map a legacy reference (positional, or a source filename) to a card filename."""
        target = reference_target(reference)
        if target.endswith(CARD_EXTENSION):
            return target
        path = self.cards.find_card_path(target)
        return path.name if path is not None else target

    def _upgrade_v1(self, tag: Tag) -> Tag:
        return dataclasses.replace(
            tag,
            references=dedupe(self._resolve_reference(r) for r in tag.references),
        )

    def _migrate(self, path: Path, tag: Tag, fmt: int) -> Path:
        upgrade = self.migrations.get(fmt)
        if upgrade is not None:
            tag = upgrade(tag)
        new_path = self.tag_path(tag)
        if new_path == path:
            atomic_write(path, render_tag(tag))
            return path
        if not new_path.exists():
            atomic_write(new_path, render_tag(tag))
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        logger.info("Migrated tag file %s -> %s", path.name, new_path.name)
        return new_path

    def load(self, path: Path) -> Optional[Tag]:
        """
        Parse one tag file, migrating older formats in place.

        Returns None (and logs) for files that cannot be parsed.
        """
        try:
            text = read_text(path)
        except OSError as e:
            logger.warning("Cannot read tag file %s: %s", path, e)
            return None
        fmt = detect_format(text)
        tag = parse_tag(text)
        if tag is None:
            logger.warning("Skipping unparseable tag file %s", path.name)
            return None
        if fmt < CURRENT_FORMAT or path.name.endswith("." + LEGACY_TAG_EXTENSION):
            try:
                self._migrate(path, tag, fmt)
            except OSError as e:
                logger.warning("Could not migrate tag file %s: %s", path.name, e)
            tag = self.migrations[fmt](tag) if fmt in self.migrations else tag
        return tag

    def scan(self) -> tuple[list[Tag], list[Path]]:
        """All parseable tags plus the paths of files that failed to parse."""
        tags: list[Tag] = []
        bad: list[Path] = []
        seen: set[str] = set()
        for path in self.tag_files():
            tag = self.load(path)
            if tag is None:
                bad.append(path)
            elif tag.id not in seen:
                seen.add(tag.id)
                tags.append(tag)
        return tags, bad

    def list(self) -> list[Tag]:
        return self.scan()[0]

    def list_by_type(self, tag_type: str) -> list[Tag]:
        if tag_type not in TAG_TYPES:
            raise ValidationError(f"Unknown tag type: {tag_type!r}")
        tags = []
        for path in self.tag_files(tag_type):
            tag = self.load(path)
            if tag is not None:
                tags.append(tag)
        return tags

    def get(self, tag_id: str) -> Optional[Tag]:
        path = self.find_tag_file(tag_id)
        if path is None:
            return None
        tag = self.load(path)
        if tag is None or tag.id != tag_id:
            return None
        return tag

    def require(self, tag_id: str) -> Tag:
        tag = self.get(tag_id)
        if tag is None:
            raise NotFound("tag", tag_id)
        return tag

    # -------------------------------------------------------------------------
    # Markup fan-out
    # -------------------------------------------------------------------------

    def stage_embed(self, tag: Tag, card_names: list[str], staged: StagedWrite) -> list[str]:
        """Queue embedded versions of the named cards. Returns cards that changed."""
        changed = []
        for name in card_names:
            path = self.cards.raw_dir / name
            if not path.is_file():
                logger.warning("Tag %s references missing card %s", tag.id, name)
                continue
            try:
                card = self.cards.load_card(path)
            except StructuralParseError as e:
                logger.warning("Not embedding into malformed card %s: %s", name, e.detail)
                continue
            updated = markup.embed(card, tag)
            if updated != card:
                staged.write(path, self.cards.render(updated))
                changed.append(name)
        return changed

    def stage_strip(self, tag_id: str, staged: StagedWrite) -> list[str]:
        """Queue stripped versions of every card mentioning tag_id."""
        changed = []
        for path in self.cards.list_card_paths():
            try:
                if tag_id not in read_text(path):
                    continue
                card = self.cards.load_card(path)
            except (OSError, StructuralParseError) as e:
                logger.warning("Not stripping %s from %s: %s", tag_id, path.name, e)
                continue
            updated = markup.strip(card, tag_id)
            if updated != card:
                staged.write(path, self.cards.render(updated))
                changed.append(path.name)
        return changed

    def _stage_index_refresh(self, tag: Tag, staged: StagedWrite) -> None:
        for name in tag.card_filenames:
            path = self.cards.raw_dir / name
            if path in staged.paths or not path.is_file():
                continue
            try:
                card = self.cards.load_card(path)
            except StructuralParseError:
                continue
            updated = markup.refresh_index(card, tag)
            if updated is not card:
                staged.write(path, self.cards.render(updated))

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def create(self, insert: InsertTag) -> Tag:
        """
        Create a tag and embed it into every referenced card.

        Raises:
            ValidationError: If the fields are invalid (nothing is written)
        """
        links = _coerce_links(insert.connected_entities)
        validate_tag(
            insert.type,
            insert.name,
            insert.references,
            insert.aliases,
            insert.key_value_pairs,
            insert.pair_key,
            insert.ui_type,
            links,
        )
        now = utc_now()
        tag = Tag(
            id=new_id(),
            type=insert.type,
            name=insert.name.strip(),
            references=dedupe(self._resolve_reference(r) for r in insert.references),
            aliases=dedupe(a.strip() for a in insert.aliases),
            key_value_pairs=dict(insert.key_value_pairs),
            description=insert.description,
            entity_type=insert.entity_type or None,
            created=now,
            modified=now,
            pair_key=insert.pair_key,
            pair_value=insert.pair_value,
            data_type=insert.data_type,
            ui_type=insert.ui_type,
            connected_entities=links,
        )
        with StagedWrite() as staged:
            staged.write(self.tag_path(tag), render_tag(tag))
            embedded = self.stage_embed(tag, tag.card_filenames, staged)
        logger.info("Created tag %s (embedded in %d cards)", tag, len(embedded))
        return tag

    def update(self, tag_id: str, **changes) -> Tag:
        """
        Apply field changes to a tag.

        Renaming moves the file. New references are embedded; edits to name,
        aliases or description are not re-embedded into existing cards.

        Raises:
            NotFound: If the tag does not exist
            ValidationError: If the result would be invalid
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if "type" in unknown:
            raise ValidationError("A tag's type cannot be changed")
        if unknown:
            raise ValidationError(f"Unknown tag fields: {', '.join(sorted(unknown))}")

        old_path = self.find_tag_file(tag_id)
        current = self.load(old_path) if old_path is not None else None
        if current is None or current.id != tag_id:
            raise NotFound("tag", tag_id)
        old_path = self.find_tag_file(tag_id)

        if "connected_entities" in changes:
            changes["connected_entities"] = _coerce_links(changes["connected_entities"])
        if "references" in changes:
            changes["references"] = dedupe(self._resolve_reference(r) for r in changes["references"])
        if "aliases" in changes:
            changes["aliases"] = dedupe(a.strip() for a in changes["aliases"])
        if "name" in changes and changes["name"]:
            changes["name"] = changes["name"].strip()

        updated = dataclasses.replace(current, **changes, modified=utc_now())
        validate_tag(
            updated.type,
            updated.name,
            updated.references,
            updated.aliases,
            updated.key_value_pairs,
            updated.pair_key,
            updated.ui_type,
            updated.connected_entities,
        )

        new_path = self.tag_path(updated)
        added = [r for r in updated.card_filenames if r not in current.card_filenames]
        with StagedWrite() as staged:
            staged.write(new_path, render_tag(updated))
            if old_path is not None and old_path != new_path:
                staged.remove(old_path)
            self.stage_embed(updated, added, staged)
            if updated.name != current.name:
                self._stage_index_refresh(updated, staged)
        logger.info("Updated tag %s (%s)", updated, ", ".join(sorted(changes)))
        return updated

    def delete(self, tag_id: str) -> bool:
        """Strip the tag from every card, then remove its file. False if absent."""
        path = self.find_tag_file(tag_id)
        if path is None:
            return False
        with StagedWrite() as staged:
            stripped = self.stage_strip(tag_id, staged)
            staged.remove(path)
        logger.info("Deleted tag %s (stripped from %d cards)", tag_id, len(stripped))
        return True

    def relink_entities(self, old_ids: list[str], new_id: str) -> list[Tag]:
        """
        Point relationship links at ``new_id`` instead of any of ``old_ids``.

        A link that would repeat an entity already in the relationship is
        dropped. Returns the relationship tags that changed.
        """
        old = set(old_ids)
        changed: list[Tag] = []
        with StagedWrite() as staged:
            for tag in self.list_by_type("relationship"):
                if not any(link.entity_id in old for link in tag.connected_entities):
                    continue
                links: list[EntityLink] = []
                seen: set[str] = set()
                for link in tag.connected_entities:
                    entity_id = new_id if link.entity_id in old else link.entity_id
                    if entity_id in seen:
                        continue
                    seen.add(entity_id)
                    links.append(dataclasses.replace(link, entity_id=entity_id))
                updated = dataclasses.replace(tag, connected_entities=links, modified=utc_now())
                staged.write(self.find_tag_file(tag.id) or self.tag_path(tag), render_tag(updated))
                changed.append(updated)
        if changed:
            logger.info("Relinked %d relationship tags to %s", len(changed), new_id)
        return changed

    def drop_references(self, tag: Tag, dead: set[str]) -> Optional[Tag]:
        """
        Rewrite a tag without the given card references.

        A tag left with no references is deleted and None is returned.
        """
        keep = [r for r in tag.references if reference_target(r) not in dead]
        if not keep:
            self.delete(tag.id)
            return None
        updated = dataclasses.replace(tag, references=keep, modified=utc_now())
        path = self.find_tag_file(tag.id) or self.tag_path(tag)
        atomic_write(path, render_tag(updated))
        return updated
