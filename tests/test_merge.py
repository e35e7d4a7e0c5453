"""
Tests for merging duplicate tags into a master tag.
"""

import pytest

from orcs.errors import NotFound, ValidationError
from orcs.merge import MergePreview, merged_fields
from orcs.types import EntityLink, InsertConnection, InsertTag, Tag


@pytest.fixture
def scenario(orcs_store):
    """Acme Corp in the brief, a duplicate 'Acme Corporation' tag in the notes."""
    brief = orcs_store.upload("brief.txt", b"Acme Corp acquired Globex.")
    notes = orcs_store.upload("notes.txt", b"Acme Corp filed suit.")
    master = orcs_store.create_tag(InsertTag(
        "entity", "Acme Corp", references=[brief.filename], key_value_pairs={"sector": "retail"},
        description="Holding company",
    ))
    dup = orcs_store.create_tag(InsertTag(
        "entity", "Acme Corporation", references=[notes.filename], aliases=["Acme Corp"],
        key_value_pairs={"sector": "manufacturing", "hq": "Ohio"}, description="Plaintiff",
    ))
    globex = orcs_store.create_tag(InsertTag("entity", "Globex", references=[brief.filename]))
    conn = orcs_store.create_connection(InsertConnection(dup.id, globex.id))
    return brief, notes, master, dup, globex, conn


def test_duplicate_marked_before_merge(orcs_store, scenario):
    _brief, notes, _master, dup, _globex, _conn = scenario
    assert orcs_store.get_card(notes.uuid).original == f"[entity:Acme Corp]({dup.id}) filed suit."


def test_merge(orcs_store, scenario):
    brief, notes, master, dup, globex, conn = scenario
    merged = orcs_store.merge_tags(master.id, [dup.id])

    assert merged.id == master.id
    assert merged.references == [brief.filename, notes.filename]
    assert merged.aliases == ["Acme Corp"]
    assert merged.key_value_pairs == {"sector": "manufacturing", "hq": "Ohio"}
    assert merged.description == "Holding company\n\nPlaintiff"

    # Duplicate gone from files and index
    assert orcs_store.get_tag(dup.id) is None
    assert orcs_store.get_index().tag(dup.id) is None

    # Its spans now carry the master
    notes_card = orcs_store.get_card(notes.uuid)
    assert notes_card.original == f"[entity:Acme Corp]({master.id}) filed suit."
    assert notes_card.tag_index == [master.index_entry]

    # Connection endpoints follow the master
    assert orcs_store.get_connection(conn.id).source_tag_id == master.id
    assert orcs_store.broken_connections() == []


def test_dry_run_changes_nothing(orcs_store, scenario):
    brief, notes, master, dup, _globex, _conn = scenario
    preview = orcs_store.merge_tags(master.id, [dup.id, "missing"], dry_run=True)
    assert isinstance(preview, MergePreview)
    assert preview.merge_ids == [dup.id]
    assert preview.missing_ids == ["missing"]
    assert preview.connections_rewritten == 1
    assert preview.affected_cards == [brief.filename, notes.filename]
    assert orcs_store.get_tag(dup.id) is not None
    assert orcs_store.get_tag(master.id) == master


def test_master_in_merge_ids_ignored(orcs_store, scenario):
    _brief, _notes, master, dup, _globex, _conn = scenario
    merged = orcs_store.merge_tags(master.id, [master.id, dup.id])
    assert orcs_store.get_tag(master.id) == merged


def test_nothing_to_merge(orcs_store, scenario):
    _brief, _notes, master, _dup, _globex, _conn = scenario
    with pytest.raises(ValidationError, match="No valid tags"):
        orcs_store.merge_tags(master.id, [master.id, "missing"])


def test_missing_master(orcs_store, scenario):
    _brief, _notes, _master, dup, _globex, _conn = scenario
    with pytest.raises(NotFound):
        orcs_store.merge_tags("missing", [dup.id])


def test_merged_fields_keeps_identical_description_once():
    master = Tag(id="m", type="entity", name="A", references=["a"], description="same")
    other = Tag(id="o", type="entity", name="B", references=["a", "b"], aliases=["B"], description="same")
    fields = merged_fields(master, [other])
    assert fields["references"] == ["a", "b"]
    assert fields["aliases"] == ["B"]
    assert fields["description"] == "same"


class TestRelationshipLinks:

    @pytest.fixture
    def acquired(self, orcs_store, scenario):
        brief, _notes, _master, dup, globex, _conn = scenario
        return orcs_store.create_tag(InsertTag(
            "relationship", "acquired", references=[brief.filename],
            connected_entities=[EntityLink(dup.id, 1), EntityLink(globex.id, 2)],
        ))

    def test_links_follow_master(self, orcs_store, scenario, acquired):
        _brief, _notes, master, dup, globex, _conn = scenario
        orcs_store.merge_tags(master.id, [dup.id])

        relinked = orcs_store.get_tag(acquired.id)
        assert relinked.connected_entities == [EntityLink(master.id, 1), EntityLink(globex.id, 2)]
        assert orcs_store.broken_connections() == []
        ids = {c.id for c in orcs_store.get_index().connections}
        assert f"{master.id}-{acquired.id}-{globex.id}" in ids

    def test_links_match_full_build(self, orcs_store, scenario, acquired):
        _brief, _notes, master, dup, _globex, _conn = scenario
        orcs_store.merge_tags(master.id, [dup.id])
        incremental = sorted(c.id for c in orcs_store.get_index().connections)
        full = sorted(c.id for c in orcs_store.index.build_full_index().connections)
        assert incremental == full

    def test_duplicate_link_collapses(self, orcs_store, scenario):
        brief, _notes, master, dup, globex, _conn = scenario
        rel = orcs_store.create_tag(InsertTag(
            "relationship", "sued", references=[brief.filename],
            connected_entities=[EntityLink(master.id), EntityLink(dup.id), EntityLink(globex.id)],
        ))
        orcs_store.merge_tags(master.id, [dup.id])
        assert [link.entity_id for link in orcs_store.get_tag(rel.id).connected_entities] == [
            master.id, globex.id,
        ]

    def test_dry_run_counts_relationships(self, orcs_store, scenario, acquired):
        _brief, _notes, master, dup, _globex, _conn = scenario
        preview = orcs_store.merge_tags(master.id, [dup.id], dry_run=True)
        assert preview.relationships_rewritten == 1
        assert orcs_store.get_tag(acquired.id).connected_entities[0].entity_id == dup.id
