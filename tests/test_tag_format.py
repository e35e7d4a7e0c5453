"""
Tests for tag file reading (both on-disk formats) and writing.
"""

import dataclasses

from orcs.tag_format import TAG_BANNER, TAG_END, detect_format, parse_tag, render_tag
from orcs.types import EntityLink, Tag


V1_KV = """=== ORCS TAG FILE ===
UUID: t-old
TYPE: kv
NAME: Status
REFERENCE: brief.txt@0-4, notes.txt
CREATED: 2024-01-01T00:00:00.000Z
MODIFIED: 2024-01-02T00:00:00.000Z
ALIASES:
  - state
KEY_VALUE_PAIRS:
  status: open
DESCRIPTION:
Case status
=== END ORCS TAG FILE ===
"""


def _relationship() -> Tag:
    return Tag(
        id="r-1",
        type="relationship",
        name="acquired",
        references=["brief_c-1.card.txt"],
        aliases=["bought"],
        key_value_pairs={"date": "2024"},
        description="First line\n\nSecond paragraph",
        created="2025-01-01T00:00:00.000Z",
        modified="2025-01-01T00:00:00.000Z",
        connected_entities=[EntityLink("e-acme", 1), EntityLink("e-globex", 2)],
    )


def test_render_layout():
    text = render_tag(_relationship())
    lines = text.splitlines()
    assert lines[0] == TAG_BANNER
    assert lines[1] == "FORMAT: 2"
    assert "TAG_TYPE: relationship" in lines
    assert "  - brief_c-1.card.txt" in lines
    assert "  - e-globex (2)" in lines
    assert lines[-1] == TAG_END


def test_current_format_reads_back():
    tag = _relationship()
    assert parse_tag(render_tag(tag)) == tag


def test_reads_format_1():
    tag = parse_tag(V1_KV)
    assert tag.id == "t-old"
    assert tag.type == "kv_pair"
    assert tag.references == ["brief.txt@0-4", "notes.txt"]
    assert tag.aliases == ["state"]
    assert tag.key_value_pairs == {"status": "open"}
    assert (tag.pair_key, tag.pair_value) == ("status", "open")
    assert tag.description == "Case status"


def test_detect_format():
    assert detect_format(V1_KV) == 1
    assert detect_format(render_tag(_relationship())) == 2
    assert detect_format("random text") == 0
    assert parse_tag("random text") is None


def test_section_lines_do_not_set_format_or_header():
    text = V1_KV.replace(
        "  status: open\n",
        "  status: open\n  FORMAT: pdf\n  TAG_TYPE: x\n  NAME: Other\n",
    )
    assert detect_format(text) == 1
    tag = parse_tag(text)
    assert tag.name == "Status"
    assert tag.type == "kv_pair"
    assert tag.key_value_pairs == {"status": "open", "FORMAT": "pdf", "TAG_TYPE": "x", "NAME": "Other"}


def test_description_text_does_not_set_format():
    tag = dataclasses.replace(_relationship(), description="FORMAT: 7\nTYPE: other")
    assert detect_format(render_tag(tag)) == 2
    assert parse_tag(render_tag(tag)) == tag


def test_missing_references_is_unparseable():
    text = render_tag(_relationship()).replace("  - brief_c-1.card.txt\n", "")
    assert parse_tag(text) is None


def test_unknown_type_is_unparseable():
    text = render_tag(_relationship()).replace("TAG_TYPE: relationship", "TAG_TYPE: gadget")
    assert parse_tag(text) is None


def test_unknown_header_lines_ignored():
    text = render_tag(_relationship()).replace("FORMAT: 2\n", "FORMAT: 2\nCOLOR: blue\n")
    assert parse_tag(text) == _relationship()
