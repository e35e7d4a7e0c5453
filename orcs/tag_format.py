"""
Tag file reader and writer.

Two on-disk formats exist. Format 1 is the older ``.orcs`` layout with a
``TYPE:`` header, a single-line comma-separated ``REFERENCE:`` and an
``ALIASES:`` list. Format 2 is the current layout::

    === ORCS TAG FILE ===
    FORMAT: 2
    UUID: 0c6f...
    TAG_TYPE: entity
    NAME: Acme Corp
    ENTITY_TYPE: organization
    CREATED: 2025-01-01T00:00:00.000Z
    MODIFIED: 2025-01-01T00:00:00.000Z

    SEARCH_ALIASES:
      - Acme
    CARD_REFERENCES:
      - brief_7d1e....card.txt
    KEY_VALUE_PAIRS:
      sector: manufacturing
    CONNECTED_ENTITIES:
      - 5a2b... (1)
    DESCRIPTION:
    free text, possibly several lines
    === END ORCS TAG FILE ===

Reading is tolerant: unknown header lines are ignored. A file missing any of
the required fields parses to None rather than raising.
"""

import logging
import re
from typing import Callable, Optional

from .types import TAG_TYPES, Direction, EntityLink, Tag, dedupe

logger = logging.getLogger(__name__)

TAG_BANNER = "=== ORCS TAG FILE ==="
TAG_END = "=== END ORCS TAG FILE ==="

CURRENT_FORMAT = 2

# Scalar headers of format 2, in write order
_SCALARS = (
    ("UUID", "id"),
    ("TAG_TYPE", "type"),
    ("NAME", "name"),
    ("ENTITY_TYPE", "entity_type"),
    ("UI_TYPE", "ui_type"),
    ("DATA_TYPE", "data_type"),
    ("PAIR_KEY", "pair_key"),
    ("PAIR_VALUE", "pair_value"),
    ("CREATED", "created"),
    ("MODIFIED", "modified"),
)

_SECTIONS = ("SEARCH_ALIASES", "CARD_REFERENCES", "KEY_VALUE_PAIRS", "CONNECTED_ENTITIES", "DESCRIPTION")
_LEGACY_SECTIONS = ("ALIASES", "KEY_VALUE_PAIRS", "DESCRIPTION")
_ALL_SECTIONS = frozenset(_SECTIONS + _LEGACY_SECTIONS)

# Older files abbreviate kv_pair
_TYPE_ALIASES = {"kv": "kv_pair", "relation": "relationship", "attrib": "attribute"}

_LINK_RE = re.compile(r"^-\s+(?P<id>\S+)(?:\s+\((?P<dir>-?\d+)\))?$")


def detect_format(text: str) -> int:
    """
    Format version of a tag file's text; 0 if unrecognised.

    Only the scalar header is read. Lines inside sections such as
    KEY_VALUE_PAIRS or DESCRIPTION never count.
    """
    saw_type = False
    for line in text.split("\n"):
        stripped = line.strip()
        if stripped.endswith(":") and stripped[:-1] in _ALL_SECTIONS:
            break
        if stripped.startswith("FORMAT:"):
            value = stripped[7:].strip()
            return int(value) if value.isdigit() else 0
        if stripped.startswith("TAG_TYPE:"):
            return 2
        if stripped.startswith("TYPE:"):
            saw_type = True
    return 1 if saw_type else 0


def _normalize_type(value: str) -> str:
    value = value.strip().lower()
    return _TYPE_ALIASES.get(value, value)


def _build(fields: dict) -> Optional[Tag]:
    required = ("id", "type", "name", "created", "modified")
    missing = [k for k in required if not fields.get(k)]
    if not fields.get("references"):
        missing.append("references")
    if missing:
        logger.debug("Tag file missing %s", ", ".join(missing))
        return None
    if fields["type"] not in TAG_TYPES:
        logger.debug("Tag file has unknown type %r", fields["type"])
        return None
    description = "\n".join(fields.get("description", [])).strip("\n")
    return Tag(
        id=fields["id"],
        type=fields["type"],
        name=fields["name"],
        references=dedupe(fields["references"]),
        aliases=dedupe(fields.get("aliases", [])),
        key_value_pairs=fields.get("key_value_pairs", {}),
        description=description,
        entity_type=fields.get("entity_type") or None,
        created=fields["created"],
        modified=fields["modified"],
        pair_key=fields.get("pair_key") or None,
        pair_value=fields.get("pair_value") or None,
        data_type=fields.get("data_type") or None,
        ui_type=fields.get("ui_type") or None,
        connected_entities=fields.get("connected_entities", []),
    )


def _parse_kv(stripped: str, into: dict) -> None:
    if ":" in stripped:
        key, _, value = stripped.partition(":")
        if key.strip():
            into[key.strip()] = value.strip()


def read_v1(text: str) -> Optional[Tag]:
    fields: dict = {"aliases": [], "key_value_pairs": {}, "description": []}
    section = ""
    for line in text.split("\n"):
        stripped = line.strip()
        if stripped in (TAG_BANNER, TAG_END):
            continue
        header = stripped[:-1] if stripped.endswith(":") else None
        if header in _LEGACY_SECTIONS:
            section = header
            continue
        if section == "DESCRIPTION":
            if stripped:
                fields["description"].append(stripped)
            continue
        if section == "ALIASES":
            if stripped.startswith("- "):
                fields["aliases"].append(stripped[2:].strip())
            continue
        if section == "KEY_VALUE_PAIRS":
            _parse_kv(stripped, fields["key_value_pairs"])
            continue
        if stripped.startswith("UUID:"):
            fields["id"] = stripped[5:].strip()
        elif stripped.startswith("TYPE:"):
            fields["type"] = _normalize_type(stripped[5:])
        elif stripped.startswith("NAME:"):
            fields["name"] = stripped[5:].strip()
        elif stripped.startswith("REFERENCE:"):
            fields["references"] = [r.strip() for r in stripped[10:].split(",") if r.strip()]
        elif stripped.startswith("ENTITY_TYPE:"):
            fields["entity_type"] = stripped[12:].strip()
        elif stripped.startswith("CREATED:"):
            fields["created"] = stripped[8:].strip()
        elif stripped.startswith("MODIFIED:"):
            fields["modified"] = stripped[9:].strip()
    if fields.get("type") == "kv_pair" and not fields.get("pair_key"):
        kv = fields["key_value_pairs"]
        if kv:
            fields["pair_key"], fields["pair_value"] = next(iter(kv.items()))
    return _build(fields)


def read_v2(text: str) -> Optional[Tag]:
    fields: dict = {
        "aliases": [],
        "references": [],
        "key_value_pairs": {},
        "connected_entities": [],
        "description": [],
    }
    scalars = dict(_SCALARS)
    section = ""
    for line in text.split("\n"):
        stripped = line.strip()
        if stripped in (TAG_BANNER, TAG_END):
            continue
        if section == "DESCRIPTION":
            fields["description"].append(line.rstrip())
            continue
        header = stripped[:-1] if stripped.endswith(":") else None
        if header in _SECTIONS:
            section = header
            continue
        key, sep, value = stripped.partition(":")
        if not section and sep and key in scalars:
            value = value.strip()
            fields[scalars[key]] = _normalize_type(value) if key == "TAG_TYPE" else value
        elif section == "SEARCH_ALIASES" and stripped.startswith("- "):
            fields["aliases"].append(stripped[2:].strip())
        elif section == "CARD_REFERENCES" and stripped.startswith("- "):
            fields["references"].append(stripped[2:].strip())
        elif section == "KEY_VALUE_PAIRS":
            _parse_kv(stripped, fields["key_value_pairs"])
        elif section == "CONNECTED_ENTITIES":
            m = _LINK_RE.match(stripped)
            if m:
                direction = int(m.group("dir")) if m.group("dir") else int(Direction.FORWARD)
                fields["connected_entities"].append(EntityLink(m.group("id"), direction))
    return _build(fields)


# Format version -> reader
READERS: dict[int, Callable[[str], Optional[Tag]]] = {
    1: read_v1,
    2: read_v2,
}


def parse_tag(text: str) -> Optional[Tag]:
    """Parse tag file text in any known format. None if unparseable."""
    reader = READERS.get(detect_format(text))
    if reader is None:
        return None
    return reader(text)


def render_tag(tag: Tag) -> str:
    """Render a tag in the current format."""
    lines = [TAG_BANNER, f"FORMAT: {CURRENT_FORMAT}"]
    for header, attr in _SCALARS:
        value = getattr(tag, attr)
        if value:
            lines.append(f"{header}: {value}")
    lines.append("")
    lines.append("SEARCH_ALIASES:")
    lines.extend(f"  - {alias}" for alias in tag.aliases)
    lines.append("CARD_REFERENCES:")
    lines.extend(f"  - {ref}" for ref in tag.references)
    lines.append("KEY_VALUE_PAIRS:")
    lines.extend(f"  {k}: {v}" for k, v in tag.key_value_pairs.items())
    if tag.connected_entities:
        lines.append("CONNECTED_ENTITIES:")
        lines.extend(
            f"  - {link.entity_id} ({int(link.direction)})" for link in tag.connected_entities
        )
    if tag.description:
        lines.append("DESCRIPTION:")
        lines.append(tag.description)
    lines.append(TAG_END)
    return "\n".join(lines) + "\n"
