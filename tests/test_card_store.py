"""
Tests for sources, cards and their integrity checks.
"""

import dataclasses
import hashlib

import pytest

from orcs.card_store import CardStore, differing_tokens, normalize_lines, stable_file_id
from orcs.config import CardDefaults
from orcs.errors import NotFound, ValidationError
from orcs.types import CARD_EXTENSION

from conftest import BRIEF


@pytest.fixture
def uploaded(card_store):
    _record, card = card_store.save_upload("brief.txt", BRIEF)
    return card


class TestUpload:

    def test_creates_source_and_card(self, card_store, uploaded):
        assert (card_store.raw_dir / "brief.txt").read_bytes() == BRIEF
        assert uploaded.filename == f"brief_{uploaded.uuid}{CARD_EXTENSION}"
        assert (card_store.raw_dir / uploaded.filename).is_file()
        assert uploaded.original == BRIEF.decode()
        assert uploaded.source_hash == "sha256:" + hashlib.sha256(BRIEF).hexdigest()
        assert uploaded.tag_index == []
        assert uploaded.user_added == ""
        assert uploaded.file_size == len(BRIEF)

    def test_record_describes_source(self, card_store):
        record, _card = card_store.save_upload("data.csv", b"a,b\n1,2\n")
        assert record.name == "data.csv"
        assert record.kind == "csv"
        assert record.size == 8
        assert record.id == stable_file_id(card_store.raw_dir / "data.csv", card_store.root)

    def test_filename_sanitised(self, card_store):
        _record, card = card_store.save_upload("my report (v2).txt", b"text")
        assert card.source_file == "my_report__v2_.txt"

    @pytest.mark.parametrize("name", ["report.pdf", "notes", "", "x.card.txt"])
    def test_rejected_names(self, card_store, name):
        with pytest.raises(ValidationError):
            card_store.save_upload(name, b"text")

    def test_crlf_preserved_on_disk(self, card_store):
        _record, card = card_store.save_upload("crlf.txt", b"one\r\ntwo\r\n")
        reloaded = card_store.read_card(card.uuid)
        assert reloaded.original == "one\r\ntwo\r\n"

    def test_defaults_stamped(self, store_root):
        store = CardStore(store_root, CardDefaults(classification="U", handling=["ORCON"], analyst="kim"))
        _record, card = store.save_upload("brief.txt", BRIEF)
        loaded = store.read_card(card.uuid)
        assert loaded.classification == "U"
        assert loaded.handling == ["ORCON"]
        assert loaded.analyst == "kim"


class TestLookup:

    def test_read_by_uuid_filename_and_source(self, card_store, uploaded):
        for key in (uploaded.uuid, uploaded.filename, "brief.txt"):
            assert card_store.read_card(key).uuid == uploaded.uuid

    def test_unknown_card(self, card_store):
        with pytest.raises(NotFound):
            card_store.read_card("nope")

    def test_list_skips_malformed_cards(self, card_store, uploaded):
        (card_store.raw_dir / f"broken_{'0' * 8}-0000-0000-0000-{'0' * 12}.card.txt").write_text("garbage")
        cards = card_store.list_cards()
        assert [c.uuid for c in cards] == [uploaded.uuid]

    def test_unknown_header_keys_survive_rewrite(self, card_store, uploaded):
        path = card_store.card_path(uploaded)
        text = path.read_text().replace('analyst: ""', 'analyst: ""\nreviewer: "lee"')
        path.write_text(text)
        card = card_store.read_card(uploaded.uuid)
        assert card.extra == {"reviewer": "lee"}
        card_store.write_card(card)
        assert 'reviewer: "lee"' in path.read_text()


class TestUserText:

    def test_append_joins_with_blank_line(self, card_store, uploaded):
        card_store.append_user_text(uploaded.uuid, "first")
        card_store.append_user_text(uploaded.uuid, "second")
        assert card_store.read_card(uploaded.uuid).user_added == "first\n\nsecond"

    def test_clear(self, card_store, uploaded):
        card_store.append_user_text(uploaded.uuid, "first")
        assert card_store.clear_user_added_text(uploaded.uuid) == uploaded.uuid
        assert card_store.read_card(uploaded.uuid).user_added == ""

    def test_metadata_update_keeps_content(self, card_store, uploaded):
        card = card_store.update_card_metadata(uploaded.uuid, classification="SECRET", analyst="kim")
        reloaded = card_store.read_card(uploaded.uuid)
        assert reloaded.classification == "SECRET"
        assert reloaded.analyst == "kim"
        assert reloaded.original == uploaded.original
        assert card.modified >= uploaded.modified

    @pytest.mark.parametrize("changes", [
        {"classification": "SECRET\x80"},
        {"analyst": "kim\x7f"},
        {"source_reference": "line\x00"},
        {"handling": ["ORCON", "NO\x9bFORN"]},
    ])
    def test_metadata_with_control_characters_rejected(self, card_store, uploaded, changes):
        before = (card_store.raw_dir / uploaded.filename).read_text()
        with pytest.raises(ValidationError, match="control character"):
            card_store.update_card_metadata(uploaded.uuid, **changes)
        assert (card_store.raw_dir / uploaded.filename).read_text() == before
        assert [c.uuid for c in card_store.list_cards()] == [uploaded.uuid]

    def test_non_ascii_metadata_round_trips(self, card_store, uploaded):
        card_store.update_card_metadata(uploaded.uuid, analyst="Zo\u00eb M\u00fcller")
        assert card_store.read_card(uploaded.uuid).analyst == "Zo\u00eb M\u00fcller"

    def test_control_characters_in_defaults_rejected(self, store_root):
        with pytest.raises(ValidationError):
            CardStore(store_root, CardDefaults(classification="U\x85"))


class TestIntegrity:

    def test_markers_do_not_break_integrity(self, card_store, uploaded):
        marked = dataclasses.replace(uploaded, original="[entity:Acme Corp](t1) acquired Globex.")
        card_store.write_card(marked)
        report = card_store.verify_integrity(uploaded.uuid)
        assert report.valid
        assert report.missing_tokens == []
        assert report.source_hash_matches is True

    def test_changed_source_reports_tokens(self, card_store, uploaded):
        (card_store.raw_dir / "brief.txt").write_bytes(b"Acme Corp acquired Initech.")
        report = card_store.verify_integrity(uploaded.uuid)
        assert not report.valid
        assert report.missing_tokens == ["initech.", "+globex."]
        assert report.source_hash_matches is False

    def test_missing_source(self, card_store, uploaded):
        (card_store.raw_dir / "brief.txt").unlink()
        report = card_store.verify_integrity(uploaded.uuid)
        assert not report.valid
        assert report.missing_tokens == ["<source missing: brief.txt>"]

    def test_malformed_card(self, card_store, uploaded):
        path = card_store.card_path(uploaded)
        path.write_text(path.read_text().replace("=== ORIGINAL CONTENT END ===", ""))
        report = card_store.verify_integrity(uploaded.filename)
        assert not report.valid
        assert report.missing_tokens[0].startswith("<structural error:")
        assert report.source_file == "brief.txt"

    def test_whitespace_and_case_ignored(self, card_store, uploaded):
        card_store.write_card(dataclasses.replace(uploaded, original="ACME   corp acquired globex.\n\n"))
        assert card_store.verify_integrity(uploaded.uuid).valid

    def test_restore_rebuilds_original(self, card_store, uploaded):
        card_store.append_user_text(uploaded.uuid, "keep me")
        tampered = card_store.read_card(uploaded.uuid)
        card_store.write_card(dataclasses.replace(
            tampered, original="[entity:Acme](t1) edited", tag_index=["[entity:Acme](t1)"]
        ))
        result = card_store.restore_original_content(uploaded.uuid)
        assert result.success
        restored = card_store.read_card(uploaded.uuid)
        assert restored.original == BRIEF.decode()
        assert restored.tag_index == []
        assert restored.user_added == "keep me"

    def test_restore_without_source(self, card_store, uploaded):
        (card_store.raw_dir / "brief.txt").unlink()
        result = card_store.restore_original_content(uploaded.uuid)
        assert not result.success
        assert "missing" in result.message

    def test_restore_unknown_card(self, card_store):
        assert not card_store.restore_original_content("nope").success


class TestDelete:

    def test_delete_source_takes_card(self, card_store, uploaded):
        result = card_store.delete_document("brief.txt")
        assert result.success
        assert result.card_uuid == uploaded.uuid
        assert card_store.list_raw_files() == []

    def test_delete_card_takes_source(self, card_store, uploaded):
        result = card_store.delete_document(uploaded.filename)
        assert result.success
        assert len(result.deleted_paths) == 2
        assert card_store.list_raw_files() == []

    def test_delete_missing(self, card_store):
        assert not card_store.delete_document("nope.txt").success


def test_legacy_card_migrated(card_store, uploaded):
    legacy = card_store.raw_dir / "old.yaml.txt"
    legacy_card = dataclasses.replace(uploaded, uuid="legacy-uuid", source_file="old.txt")
    legacy.write_text(card_store.render(legacy_card))

    cards = {c.source_file: c for c in card_store.list_cards()}
    assert not legacy.exists()
    migrated = cards["old.txt"]
    assert migrated.uuid != "legacy-uuid"
    assert migrated.filename == f"old_{migrated.uuid}{CARD_EXTENSION}"
    # Second pass is a no-op
    assert card_store.migrate_legacy_cards() == 0


def test_legacy_card_kept_beside_similarly_named_card(card_store):
    _record, notes = card_store.save_upload("brief_notes.txt", b"Call Acme.")
    legacy = card_store.raw_dir / "brief.yaml.txt"
    legacy_card = dataclasses.replace(
        notes, uuid="legacy-uuid", source_file="brief.txt", original="[entity:Acme](t1) called.",
    )
    legacy.write_text(card_store.render(legacy_card))

    cards = {c.source_file: c for c in card_store.list_cards()}
    assert sorted(cards) == ["brief.txt", "brief_notes.txt"]
    assert cards["brief.txt"].original == "[entity:Acme](t1) called."
    assert cards["brief.txt"].filename.startswith("brief_")


def test_legacy_card_dropped_when_source_has_card(card_store, uploaded):
    legacy = card_store.raw_dir / "brief.yaml.txt"
    legacy.write_text(card_store.render(dataclasses.replace(uploaded, uuid="legacy-uuid")))
    assert card_store.migrate_legacy_cards() == 0
    assert not legacy.exists()
    assert [c.uuid for c in card_store.list_cards()] == [uploaded.uuid]


class TestTokens:

    def test_normalize_lines(self):
        assert normalize_lines("  A   b \n\n\tC\r\n") == ["a b", "c"]

    def test_reordered_content(self):
        assert differing_tokens(["b a"], ["a b"]) == ["<reordered content>"]

    def test_limit(self):
        tokens = differing_tokens(["a b c d e f g"], [])
        assert tokens == ["a", "b", "c", "d", "e"]
