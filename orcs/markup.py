"""
Inline reference markers inside card content.

A marker is ``[type:visible-text](tag-id)``. Markers carry the tag id, not
its name, so renaming a tag never requires touching cards, and stripping a
marker always restores the exact text that was wrapped.
"""

import dataclasses
import re
from dataclasses import dataclass
from typing import Iterable

from .types import MARKER_TYPES, Card, Tag

_TYPE_ALTERNATION = "|".join(sorted(MARKER_TYPES, key=len, reverse=True))

MARKER_RE = re.compile(
    r"\[(?P<type>" + _TYPE_ALTERNATION + r"):(?P<text>[^\]\n]+)\]\((?P<id>[^)\s]+)\)"
)


@dataclass(frozen=True)
class Marker:
    """One marker occurrence within a text region."""
    type: str
    text: str
    id: str
    start: int
    end: int


def _marker_for_id(tag_id: str) -> re.Pattern:
    return re.compile(
        r"\[(?P<type>" + _TYPE_ALTERNATION + r"):(?P<text>[^\]\n]+)\]\(" + re.escape(tag_id) + r"\)"
    )


def term_pattern(term: str) -> re.Pattern:
    """Case-insensitive whole-word pattern for a search term."""
    return re.compile(r"(?<!\w)" + re.escape(term.strip()) + r"(?!\w)", re.IGNORECASE)


def find_markers(text: str) -> list[Marker]:
    return [
        Marker(m.group("type"), m.group("text"), m.group("id"), m.start(), m.end())
        for m in MARKER_RE.finditer(text)
    ]


def marker_spans(text: str) -> list[tuple[int, int]]:
    return [(m.start(), m.end()) for m in MARKER_RE.finditer(text)]


def overlaps(start: int, end: int, spans: Iterable[tuple[int, int]]) -> bool:
    """True if [start, end) intersects any span."""
    return any(s < end and start < e for s, e in spans)


def strip_all_markers(text: str) -> str:
    """Replace every marker with its visible text."""
    return MARKER_RE.sub(lambda m: m.group("text"), text)


def strip_text(text: str, tag_id: str) -> str:
    """Replace the markers for one tag id with their visible text."""
    return _marker_for_id(tag_id).sub(lambda m: m.group("text"), text)


def embed_text(text: str, tag_type: str, tag_id: str, terms: Iterable[str]) -> str:
    """
    Wrap every unmarked whole-word occurrence of each term.

    Terms are applied in order. Marker spans are recomputed per term, so an
    alias that occurs inside an earlier marker (``Acme`` inside
    ``[entity:Acme Corp](...)``) is left alone.
    """
    for term in terms:
        if not term or not term.strip():
            continue
        spans = marker_spans(text)
        pieces: list[str] = []
        last = 0
        for m in term_pattern(term).finditer(text):
            if overlaps(m.start(), m.end(), spans):
                continue
            pieces.append(text[last:m.start()])
            pieces.append(f"[{tag_type}:{m.group(0)}]({tag_id})")
            last = m.end()
        if last:
            pieces.append(text[last:])
            text = "".join(pieces)
    return text


def count_markers(card: Card, tag_id: str) -> int:
    pattern = _marker_for_id(tag_id)
    return sum(len(pattern.findall(region)) for region in card.regions().values())


def _index_entry_id(entry: str) -> str | None:
    m = MARKER_RE.fullmatch(entry.strip())
    return m.group("id") if m else None


def _update_index(entries: list[str], tag: Tag) -> list[str]:
    wanted = tag.index_entry
    out: list[str] = []
    for entry in entries:
        entry = entry.strip()
        if not entry or entry in out:
            continue
        if entry != wanted and _index_entry_id(entry) == tag.id:
            continue  # stale name for this tag
        out.append(entry)
    if wanted not in out:
        out.append(wanted)
    return out


def embed(card: Card, tag: Tag) -> Card:
    """Return a copy of the card with the tag's markers and index entry added."""
    original = embed_text(card.original, tag.type, tag.id, tag.search_terms)
    user_added = card.user_added
    if user_added is not None:
        user_added = embed_text(user_added, tag.type, tag.id, tag.search_terms)
    updated = dataclasses.replace(card, original=original, user_added=user_added)
    if count_markers(updated, tag.id):
        updated.tag_index = _update_index(card.tag_index, tag)
    return updated


def strip(card: Card, tag_id: str) -> Card:
    """Return a copy of the card with every marker and index entry for tag_id removed."""
    user_added = card.user_added
    if user_added is not None:
        user_added = strip_text(user_added, tag_id)
    tag_index = [
        e.strip() for e in card.tag_index
        if e.strip() and _index_entry_id(e) != tag_id
    ]
    return dataclasses.replace(
        card,
        original=strip_text(card.original, tag_id),
        user_added=user_added,
        tag_index=tag_index,
    )


def refresh_index(card: Card, tag: Tag) -> Card:
    """Rewrite the card's index entry for a renamed tag. Markers are untouched."""
    if not any(_index_entry_id(e) == tag.id for e in card.tag_index):
        return card
    return dataclasses.replace(card, tag_index=_update_index(card.tag_index, tag))
