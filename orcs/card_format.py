"""
Card file format: section scanner and renderer.

A card file looks like::

    === ORCS CARD ===
    version: "2025.003"
    uuid: "..."
    source_file: "brief.txt"
    handling:
      - ""
    ...

    === TAG INDEX START ===
    [entity:Acme Corp](...)
    === TAG INDEX END ===

    === ORIGINAL CONTENT START ===
    <verbatim source text with inline markers>
    === ORIGINAL CONTENT END ===

    === USER ADDED START ===
    <analyst text>
    === USER ADDED END ===

The scanner locates delimiter lines once and yields a typed CardDocument;
regions are never re-derived by string search afterwards. Source text that
itself contains a delimiter string is handled by taking the last ORIGINAL
CONTENT END before the user-added block.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Optional

import yaml

from .errors import StructuralParseError

CARD_BANNER = "=== ORCS CARD ==="
TAG_INDEX_START = "=== TAG INDEX START ==="
TAG_INDEX_END = "=== TAG INDEX END ==="
ORIGINAL_START = "=== ORIGINAL CONTENT START ==="
ORIGINAL_END = "=== ORIGINAL CONTENT END ==="
USER_ADDED_START = "=== USER ADDED START ==="
USER_ADDED_END = "=== USER ADDED END ==="

CARD_FORMAT_VERSION = "2025.003"

# Canonical header order; unknown keys follow in the order they were read
HEADER_KEYS = (
    "version",
    "uuid",
    "source_file",
    "source_reference",
    "classification",
    "handling",
    "created",
    "modified",
    "source_hash",
    "file_type",
    "file_size",
    "analyst",
)


@dataclass
class CardDocument:
    """Typed view of a card file's four regions."""
    header: dict[str, Any] = field(default_factory=dict)
    tag_index: list[str] = field(default_factory=list)
    original: str = ""
    user_added: Optional[str] = None


def _find(lines: list[str], marker: str, start: int = 0, stop: Optional[int] = None) -> int:
    stop = len(lines) if stop is None else stop
    for i in range(start, stop):
        if lines[i].strip() == marker:
            return i
    return -1


def _rfind(lines: list[str], marker: str, start: int = 0, stop: Optional[int] = None) -> int:
    stop = len(lines) if stop is None else stop
    for i in range(stop - 1, start - 1, -1):
        if lines[i].strip() == marker:
            return i
    return -1


def _parse_value(raw: str) -> Any:
    raw = raw.strip()
    if not raw:
        return ""
    if raw.startswith('"'):
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw.strip('"')
    if raw.isdigit():
        return int(raw)
    return raw


def parse_header(lines: list[str], path: str = "<card>") -> dict[str, Any]:
    """
    Parse the YAML header between the banner and the tag index.

    Raises:
        StructuralParseError: If the header is not a YAML mapping
    """
    body = "\n".join(l for l in lines if l.strip() != CARD_BANNER)
    try:
        header = yaml.safe_load(body)
    except yaml.YAMLError as e:
        raise StructuralParseError(path, f"header is not valid YAML: {e}")
    if header is None:
        return {}
    if not isinstance(header, dict):
        raise StructuralParseError(path, "header is not a mapping")
    # Unquoted timestamps load as datetime; cards keep them as text
    return {
        str(k): (
            [str(i) if i is not None else "" for i in v] if isinstance(v, list)
            else v if isinstance(v, (int, str)) or v is None
            else str(v)
        )
        for k, v in header.items()
    }


def parse_card(text: str, path: str = "<card>") -> CardDocument:
    """
    Scan card text into a CardDocument.

    Raises:
        StructuralParseError: If the original-content delimiters are missing
    """
    lines = text.split("\n")

    ti_start = _find(lines, TAG_INDEX_START)
    ti_end = _find(lines, TAG_INDEX_END, ti_start + 1) if ti_start >= 0 else -1
    if ti_start >= 0 and ti_end < 0:
        raise StructuralParseError(path, "TAG INDEX END delimiter missing")

    oc_start = _find(lines, ORIGINAL_START, ti_end + 1 if ti_end >= 0 else 0)
    if oc_start < 0:
        raise StructuralParseError(path, "ORIGINAL CONTENT START delimiter missing")

    ua_start = _rfind(lines, USER_ADDED_START, oc_start + 1)
    ua_end = _rfind(lines, USER_ADDED_END, ua_start + 1) if ua_start >= 0 else -1
    if ua_start >= 0 and ua_end < 0:
        raise StructuralParseError(path, "USER ADDED END delimiter missing")

    oc_end = _rfind(lines, ORIGINAL_END, oc_start + 1, ua_start if ua_start >= 0 else None)
    if oc_end < 0:
        raise StructuralParseError(path, "ORIGINAL CONTENT END delimiter missing")

    header_stop = ti_start if ti_start >= 0 else oc_start
    tag_index: list[str] = []
    if ti_start >= 0:
        tag_index = [l.strip() for l in lines[ti_start + 1:ti_end] if l.strip()]

    user_added = None
    if ua_start >= 0:
        user_added = "\n".join(lines[ua_start + 1:ua_end])

    return CardDocument(
        header=parse_header(lines[:header_stop], path),
        tag_index=tag_index,
        original="\n".join(lines[oc_start + 1:oc_end]),
        user_added=user_added,
    )


def _render_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    return json.dumps("" if value is None else str(value), ensure_ascii=False)


def render_header(header: dict[str, Any]) -> list[str]:
    keys = [k for k in HEADER_KEYS if k in header]
    keys += [k for k in header if k not in HEADER_KEYS]
    lines: list[str] = []
    for key in keys:
        value = header[key]
        if isinstance(value, (list, tuple)):
            lines.append(f"{key}:")
            items = list(value) or [""]
            lines.extend(f"  - {_render_value(item)}" for item in items)
        else:
            lines.append(f"{key}: {_render_value(value)}")
    return lines


def render_card(doc: CardDocument) -> str:
    """Render a CardDocument back to card file text."""
    lines = [CARD_BANNER]
    lines.extend(render_header(doc.header))
    lines.append("")
    lines.append(TAG_INDEX_START)
    lines.extend(doc.tag_index or [""])
    lines.append(TAG_INDEX_END)
    lines.append("")
    lines.append(ORIGINAL_START)
    lines.append(doc.original)
    lines.append(ORIGINAL_END)
    if doc.user_added is not None:
        lines.append("")
        lines.append(USER_ADDED_START)
        lines.append(doc.user_added)
        lines.append(USER_ADDED_END)
    return "\n".join(lines)


def read_header_field(text: str, key: str) -> Optional[str]:
    """Pull one header value without scanning the whole card.

    Used by the index, which only needs uuid/source_file per card.
    """
    prefix = f"{key}:"
    for line in text.split("\n"):
        stripped = line.strip()
        if stripped in (TAG_INDEX_START, ORIGINAL_START):
            break
        if stripped.startswith(prefix):
            value = _parse_value(stripped[len(prefix):])
            return str(value) if value != "" else None
    return None
