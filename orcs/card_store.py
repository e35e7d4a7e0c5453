"""
Card store: uploaded sources and their card envelopes.

Sources and cards live side by side in ``<store>/raw``. A card is named
``<source-base>_<uuid>.card.txt`` and records the sha256 of the source at
creation time. Files are read as bytes and decoded without newline
translation, so the original-content region stays byte-for-byte equal to
the source.
"""

import dataclasses
import hashlib
import logging
import re
import unicodedata
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .card_format import CARD_FORMAT_VERSION, CardDocument, parse_card, read_header_field, render_card
from .config import CardDefaults
from .errors import NotFound, StructuralParseError, ValidationError
from .markup import strip_all_markers
from .staging import atomic_write
from .types import (
    CARD_EXTENSION,
    LEGACY_CARD_EXTENSION,
    SOURCE_EXTENSIONS,
    TAG_EXTENSIONS,
    Card,
    DeleteResult,
    FileRecord,
    IntegrityReport,
    RestoreResult,
    new_id,
    sanitize_filename,
    utc_now,
)

logger = logging.getLogger(__name__)

# How many differing tokens an integrity report carries
MAX_REPORTED_TOKENS = 5

_CARD_UUID_RE = re.compile(r"_([0-9a-fA-F-]{36})\.card\.txt$")


def read_text(path: Path) -> str:
    """Read a file as UTF-8 without newline translation."""
    return Path(path).read_bytes().decode("utf-8", errors="replace")


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def stable_file_id(path: Path, root: Path) -> str:
    """ID derived from the path relative to the store root only."""
    try:
        rel = Path(path).relative_to(root)
    except ValueError:
        rel = Path(path)
    return hashlib.md5(rel.as_posix().encode("utf-8")).hexdigest()


def file_kind(name: str) -> str:
    """Classify a file by its name."""
    if name.endswith(CARD_EXTENSION) or name.endswith(LEGACY_CARD_EXTENSION):
        return "orcs_card"
    for tag_type, ext in TAG_EXTENSIONS.items():
        if name.endswith("." + ext):
            return tag_type
    if name.endswith(".csv"):
        return "csv"
    return "txt"


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, timezone.utc).isoformat()


def describe_file(path: Path, root: Path, data: Optional[bytes] = None) -> FileRecord:
    """Build a FileRecord (hash, kind, card linkage) for one file."""
    path = Path(path)
    stat = path.stat()
    if data is None:
        data = path.read_bytes()
    kind = file_kind(path.name)
    card_uuid = source_file = None
    if kind == "orcs_card":
        text = data.decode("utf-8", errors="replace")
        card_uuid = read_header_field(text, "uuid")
        source_file = read_header_field(text, "source_file")
    created = getattr(stat, "st_birthtime", None) or stat.st_ctime
    return FileRecord(
        id=stable_file_id(path, root),
        name=path.name,
        path=str(path),
        kind=kind,
        size=stat.st_size,
        created=_iso(created),
        modified=_iso(stat.st_mtime),
        hash=content_hash(data),
        card_uuid=card_uuid,
        source_file=source_file,
    )


def normalize_lines(text: str) -> list[str]:
    """Collapse whitespace and lower-case each line, dropping blank lines."""
    out = []
    for line in text.splitlines():
        norm = " ".join(line.split()).lower()
        if norm:
            out.append(norm)
    return out


def differing_tokens(source: list[str], card: list[str], limit: int = MAX_REPORTED_TOKENS) -> list[str]:
    """
    A bounded sample of tokens that differ between two normalised texts.

    Tokens missing from the card come first, then extra card tokens
    prefixed with '+'.
    """
    source_tokens = " ".join(source).split()
    card_tokens = " ".join(card).split()
    card_set = set(card_tokens)
    source_set = set(source_tokens)
    out: list[str] = []
    for token in source_tokens:
        if token not in card_set and token not in out:
            out.append(token)
            if len(out) >= limit:
                return out
    for token in card_tokens:
        extra = "+" + token
        if token not in source_set and extra not in out:
            out.append(extra)
            if len(out) >= limit:
                return out
    if not out:
        out.append("<reordered content>")
    return out


def validate_header_values(**fields) -> None:
    """
    Reject header values the card header cannot carry.

    None values are skipped; list values are checked item by item.

    Raises:
        ValidationError: If a value holds a control or surrogate character
    """
    for name, value in fields.items():
        if value is None:
            continue
        for item in (value if isinstance(value, (list, tuple)) else [value]):
            for ch in str(item):
                if unicodedata.category(ch) in ("Cc", "Cs"):
                    raise ValidationError(f"{name} contains control character {ch!r}")


class CardStore:
    """
    Filesystem-backed store for sources and cards.

    Args:
        root: Store root; sources and cards go in ``root/raw``
        defaults: Header values stamped on new cards
    """

    def __init__(self, root: Path, defaults: Optional[CardDefaults] = None):
        self.root = Path(root)
        self.raw_dir = self.root / "raw"
        self.defaults = defaults or CardDefaults()
        validate_header_values(
            classification=self.defaults.classification,
            handling=self.defaults.handling,
            analyst=self.defaults.analyst,
        )
        self.raw_dir.mkdir(parents=True, exist_ok=True)

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def card_path(self, card: Card) -> Path:
        return self.raw_dir / card.filename

    def source_path(self, card: Card) -> Path:
        return self.raw_dir / card.source_file

    @staticmethod
    def to_document(card: Card) -> CardDocument:
        header = {
            "version": card.version,
            "uuid": card.uuid,
            "source_file": card.source_file,
            "source_reference": card.source_reference,
            "classification": card.classification,
            "handling": list(card.handling),
            "created": card.created,
            "modified": card.modified,
            "source_hash": card.source_hash,
            "file_type": card.file_type,
            "file_size": card.file_size,
            "analyst": card.analyst,
        }
        header.update(card.extra)
        return CardDocument(
            header=header,
            tag_index=list(card.tag_index),
            original=card.original,
            user_added=card.user_added,
        )

    @staticmethod
    def from_document(doc: CardDocument, filename: str) -> Card:
        header = dict(doc.header)
        uuid = str(header.pop("uuid", "") or "")
        if not uuid:
            raise StructuralParseError(filename, "uuid missing from card header")
        handling = header.pop("handling", None) or []
        if not isinstance(handling, list):
            handling = [handling]
        try:
            file_size = int(header.pop("file_size", 0) or 0)
        except (TypeError, ValueError):
            file_size = 0
        return Card(
            uuid=uuid,
            filename=filename,
            source_file=str(header.pop("source_file", "") or ""),
            source_hash=str(header.pop("source_hash", "") or ""),
            created=str(header.pop("created", "") or ""),
            modified=str(header.pop("modified", "") or ""),
            original=doc.original,
            tag_index=list(doc.tag_index),
            user_added=doc.user_added,
            source_reference=str(header.pop("source_reference", "") or ""),
            classification=str(header.pop("classification", "") or ""),
            handling=[str(h) for h in handling],
            analyst=str(header.pop("analyst", "") or ""),
            file_type=str(header.pop("file_type", "txt") or "txt"),
            file_size=file_size,
            version=str(header.pop("version", CARD_FORMAT_VERSION) or CARD_FORMAT_VERSION),
            extra=header,
        )

    def render(self, card: Card) -> str:
        return render_card(self.to_document(card))

    def load_card(self, path: Path) -> Card:
        """
        Parse one card file.

        Raises:
            StructuralParseError: If the file lacks its section delimiters
        """
        path = Path(path)
        return self.from_document(parse_card(read_text(path), str(path)), path.name)

    def write_card(self, card: Card) -> Path:
        path = self.card_path(card)
        atomic_write(path, self.render(card))
        return path

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def list_raw_files(self) -> list[Path]:
        """Regular files in raw/, sorted by name. Unreadable dir is empty."""
        try:
            entries = sorted(self.raw_dir.iterdir())
        except OSError as e:
            logger.warning("Cannot read %s: %s", self.raw_dir, e)
            return []
        return [
            p for p in entries
            if p.is_file() and not p.name.startswith(".")
        ]

    def list_card_paths(self) -> list[Path]:
        return [p for p in self.list_raw_files() if p.name.endswith(CARD_EXTENSION)]

    def list_cards(self) -> list[Card]:
        """All parseable cards; structural failures are logged and skipped."""
        self.migrate_legacy_cards()
        cards = []
        for path in self.list_card_paths():
            try:
                cards.append(self.load_card(path))
            except (StructuralParseError, OSError) as e:
                logger.warning("Skipping card %s: %s", path.name, e)
        return cards

    def card_exists(self, filename: str) -> bool:
        return bool(filename) and (self.raw_dir / filename).is_file()

    def find_card_path(self, card_id: str) -> Optional[Path]:
        """
        Resolve a card by card filename, uuid, or source filename.
        """
        if not card_id:
            return None
        direct = self.raw_dir / card_id
        if card_id.endswith(CARD_EXTENSION) and direct.is_file():
            return direct

        paths = self.list_card_paths()
        for path in paths:
            m = _CARD_UUID_RE.search(path.name)
            if m and m.group(1) == card_id:
                return path
        for path in paths:
            try:
                text = read_text(path)
            except OSError:
                continue
            if read_header_field(text, "uuid") == card_id:
                return path
            if read_header_field(text, "source_file") == card_id:
                return path
        return None

    def read_card(self, card_id: str) -> Card:
        """
        Load a card by filename, uuid, or source filename.

        Raises:
            NotFound: If no card matches
            StructuralParseError: If the card file is malformed
        """
        path = self.find_card_path(card_id)
        if path is None:
            raise NotFound("card", card_id)
        return self.load_card(path)

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def save_upload(self, filename: str, content: bytes) -> tuple[FileRecord, Card]:
        """
        Store an uploaded source and create its card.

        Raises:
            ValidationError: If the file is not .txt or .csv
        """
        if not filename or not filename.lower().endswith(SOURCE_EXTENSIONS):
            raise ValidationError("Only .txt and .csv files are allowed")
        name = sanitize_filename(Path(filename).name)
        if name.endswith(CARD_EXTENSION) or file_kind(name) not in ("txt", "csv"):
            raise ValidationError(f"Reserved file name: {name}")
        path = self.raw_dir / name
        atomic_write(path, content)
        record = describe_file(path, self.root, content)
        card = self.create_card(path)
        logger.info("Uploaded %s (card %s)", name, card.uuid)
        return record, card

    def create_card(self, source_path: Path) -> Card:
        """
        Create the card companion for a source file in raw/.

        Raises:
            NotFound: If the source file does not exist
        """
        source_path = Path(source_path)
        if not source_path.is_file():
            raise NotFound("source file", str(source_path))
        data = source_path.read_bytes()
        now = utc_now()
        card_uuid = new_id()
        base = source_path.stem
        card = Card(
            uuid=card_uuid,
            filename=f"{base}_{card_uuid}{CARD_EXTENSION}",
            source_file=source_path.name,
            source_hash=f"sha256:{content_hash(data)}",
            created=now,
            modified=now,
            original=data.decode("utf-8", errors="replace"),
            tag_index=[],
            user_added="",
            classification=self.defaults.classification,
            handling=list(self.defaults.handling),
            analyst=self.defaults.analyst,
            file_type=file_kind(source_path.name),
            file_size=len(data),
        )
        self.write_card(card)
        return card

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def append_user_text(self, card_id: str, text: str) -> str:
        """Append analyst text to the user-added block. Returns the card uuid."""
        card = self.read_card(card_id)
        existing = card.user_added or ""
        addition = text.strip("\n")
        if existing.strip():
            combined = existing.rstrip("\n") + "\n\n" + addition
        else:
            combined = addition
        card = dataclasses.replace(card, user_added=combined, modified=utc_now())
        self.write_card(card)
        return card.uuid

    def clear_user_added_text(self, card_id: str) -> str:
        """Empty the user-added block. Returns the card uuid."""
        card = self.read_card(card_id)
        card = dataclasses.replace(card, user_added="", modified=utc_now())
        self.write_card(card)
        return card.uuid

    def update_card_metadata(
        self,
        card_id: str,
        *,
        source_reference: Optional[str] = None,
        classification: Optional[str] = None,
        handling: Optional[list[str]] = None,
        analyst: Optional[str] = None,
    ) -> Card:
        """
        Update header fields only; content regions are preserved.

        Raises:
            ValidationError: If a value holds a control character (nothing is written)
        """
        validate_header_values(
            source_reference=source_reference,
            classification=classification,
            handling=handling,
            analyst=analyst,
        )
        card = self.read_card(card_id)
        changes: dict = {"modified": utc_now()}
        if source_reference is not None:
            changes["source_reference"] = source_reference
        if classification is not None:
            changes["classification"] = classification
        if handling:
            changes["handling"] = list(handling)
        if analyst is not None:
            changes["analyst"] = analyst
        card = dataclasses.replace(card, **changes)
        self.write_card(card)
        return card

    # -------------------------------------------------------------------------
    # Integrity
    # -------------------------------------------------------------------------

    def verify_integrity(self, card_id: str) -> IntegrityReport:
        """
        Compare a card's original region (markers stripped) with its source.

        Never raises for a malformed card or missing source; both are
        reported as invalid with an explanatory token.
        """
        path = self.find_card_path(card_id)
        if path is None:
            raise NotFound("card", card_id)
        try:
            card = self.load_card(path)
        except StructuralParseError as e:
            source = read_header_field(read_text(path), "source_file") or ""
            return IntegrityReport(False, [f"<structural error: {e.detail}>"], source)

        source = self.source_path(card)
        if not source.is_file():
            return IntegrityReport(False, [f"<source missing: {card.source_file}>"], card.source_file)

        data = source.read_bytes()
        stored_hash = card.source_hash.split(":", 1)[-1] if card.source_hash else ""
        hash_matches = (content_hash(data) == stored_hash) if stored_hash else None

        source_lines = normalize_lines(data.decode("utf-8", errors="replace"))
        card_lines = normalize_lines(strip_all_markers(card.original))
        if source_lines == card_lines:
            return IntegrityReport(True, [], card.source_file, hash_matches)
        return IntegrityReport(
            False, differing_tokens(source_lines, card_lines), card.source_file, hash_matches
        )

    def restore_original_content(self, card_id: str) -> RestoreResult:
        """
        Rebuild a card's original region from its source.

        The tag index is cleared and inline markers are lost; they have to be
        re-derived by re-tagging. The user-added block is kept verbatim.
        """
        try:
            card = self.read_card(card_id)
        except NotFound:
            return RestoreResult(False, f"Card not found: {card_id}")
        except StructuralParseError as e:
            return RestoreResult(False, f"Card is malformed and cannot be restored: {e.detail}")

        source = self.source_path(card)
        if not source.is_file():
            return RestoreResult(
                False,
                f"Original source file {card.source_file} is missing; nothing to restore from",
                card.uuid,
            )
        data = source.read_bytes()
        restored = dataclasses.replace(
            card,
            original=data.decode("utf-8", errors="replace"),
            tag_index=[],
            source_hash=f"sha256:{content_hash(data)}",
            modified=utc_now(),
        )
        self.write_card(restored)
        logger.info("Restored original content of card %s", card.uuid)
        return RestoreResult(
            True,
            f"Restored {card.filename} from {card.source_file}; inline tags were removed",
            card.uuid,
        )

    # -------------------------------------------------------------------------
    # Deletion and migration
    # -------------------------------------------------------------------------

    def _companion_cards(self, source_name: str) -> list[Path]:
        found = []
        base = Path(source_name).stem
        for path in self.list_card_paths():
            try:
                linked = read_header_field(read_text(path), "source_file")
            except OSError:
                linked = None
            if linked == source_name or (linked is None and path.name.startswith(base + "_")):
                found.append(path)
        return found

    def delete_document(self, name: str) -> DeleteResult:
        """
        Delete a source and its card together, starting from either one.

        Tags that referenced the card are left alone; their references become
        orphaned and are cleaned by garbage collection.
        """
        path = self.raw_dir / name
        if not path.is_file():
            return DeleteResult(False)

        deleted: list[str] = []
        card_uuid = card_filename = None
        if path.name.endswith(CARD_EXTENSION):
            text = read_text(path)
            card_uuid = read_header_field(text, "uuid")
            card_filename = path.name
            source_name = read_header_field(text, "source_file")
            path.unlink()
            deleted.append(str(path))
            if source_name:
                source = self.raw_dir / source_name
                if source.is_file() and not self._companion_cards(source_name):
                    source.unlink()
                    deleted.append(str(source))
                elif not source.is_file():
                    logger.info("Original file not found: %s", source_name)
        else:
            companions = self._companion_cards(path.name)
            path.unlink()
            deleted.append(str(path))
            for card_path in companions:
                text = read_text(card_path)
                card_uuid = read_header_field(text, "uuid")
                card_filename = card_path.name
                card_path.unlink()
                deleted.append(str(card_path))
            if not companions:
                logger.info("No companion card found for: %s", path.name)

        logger.info("Deleted %s", ", ".join(Path(p).name for p in deleted))
        return DeleteResult(bool(deleted), deleted, card_uuid, card_filename)

    def migrate_legacy_cards(self) -> int:
        """
        Rename ``<base>.yaml.txt`` cards to ``<base>_<uuid>.card.txt``.

        Idempotent: a legacy card whose source file already has a current
        card is simply removed.
        """
        legacy = [p for p in self.list_raw_files() if p.name.endswith(LEGACY_CARD_EXTENSION)]
        if not legacy:
            return 0
        sources = set()
        for card_path in self.list_card_paths():
            try:
                sources.add(read_header_field(read_text(card_path), "source_file"))
            except OSError:
                continue
        sources.discard(None)

        migrated = 0
        for path in legacy:
            base = path.name[: -len(LEGACY_CARD_EXTENSION)]
            try:
                text = read_text(path)
                source = read_header_field(text, "source_file")
                if source is not None and source in sources:
                    path.unlink()
                    logger.info("Removed legacy card %s (%s already has a card)", path.name, source)
                    continue
                card_uuid = new_id()
                text, count = re.subn(r'^uuid:\s*"[^"]*"', f'uuid: "{card_uuid}"', text, count=1, flags=re.M)
                if not count:
                    continue
                new_path = self.raw_dir / f"{base}_{card_uuid}{CARD_EXTENSION}"
                atomic_write(new_path, text)
                path.unlink()
                migrated += 1
                if source is not None:
                    sources.add(source)
                logger.info("Migrated legacy card %s -> %s", path.name, new_path.name)
            except FileNotFoundError:
                continue
        return migrated
