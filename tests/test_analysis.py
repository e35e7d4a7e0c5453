"""
Tests for reference analysis: tagged and untagged references to a tag.
"""

import pytest

from orcs.analysis import (
    AliasPolicy,
    calculate_confidence,
    extract_context,
    match_reasons,
    strip_with_offsets,
)
from orcs.config import AnalysisSettings
from orcs.errors import NotFound, ValidationError
from orcs.types import InsertTag, Tag

NO_ALIASES = AliasPolicy(False, False, False)


@pytest.fixture
def acme(orcs_store, brief_card, notes_card):
    """Acme Corp, tagged in the brief only."""
    return orcs_store.create_tag(InsertTag(
        "entity", "Acme Corp", references=[brief_card.filename], aliases=["Acme"],
        entity_type="organization",
    ))


class TestAnalyze:

    def test_tagged_and_untagged(self, orcs_store, brief_card, notes_card, acme):
        result = orcs_store.analyze_references(acme.id, NO_ALIASES)
        [tagged] = result.tagged
        assert tagged.filename == brief_card.filename
        assert tagged.exact_text == "Acme Corp"
        assert tagged.location == f"Characters {tagged.start}-{tagged.end}"
        [untagged] = result.untagged
        assert untagged.filename == notes_card.filename
        assert untagged.text == "Acme Corp"
        assert untagged.region == "original"
        assert untagged.start == len("Analysts expect ")
        assert untagged.confidence == pytest.approx(0.9)
        assert untagged.reasons == ["Exact name match", "Proper noun formatting"]

    def test_aliases_follow_policy(self, orcs_store, acme):
        with_aliases = orcs_store.analyze_references(acme.id, AliasPolicy(False, False, True))
        assert sorted(r.text for r in with_aliases.untagged) == ["Acme", "Acme Corp"]
        alias_ref = next(r for r in with_aliases.untagged if r.text == "Acme")
        assert alias_ref.reasons[0] == "Alias match"
        # The similarity context ignores aliases under this policy
        similarity = orcs_store.analyze_references(acme.id, AliasPolicy(False, False, True), "similarity")
        assert [r.text for r in similarity.untagged] == ["Acme Corp"]

    def test_default_policy_from_config(self, orcs_store, acme):
        result = orcs_store.analyze_references(acme.id)
        assert result.total_untagged_count == 2

    def test_never_reports_inside_markers(self, orcs_store, brief_card, acme):
        result = orcs_store.analyze_references(acme.id, AliasPolicy(True, True, True))
        assert all(r.filename != brief_card.filename for r in result.untagged)

    def test_user_added_region_scanned(self, orcs_store, brief_card, acme):
        orcs_store.append_user_text(brief_card.uuid, "Call acme corp tomorrow.")
        result = orcs_store.analyze_references(acme.id, NO_ALIASES, filenames=[brief_card.filename])
        [ref] = result.untagged
        assert ref.region == "user_added"
        assert ref.text == "acme corp"

    def test_context_mentions_entity_type(self, orcs_store, notes_card, acme):
        orcs_store.append_user_text(notes_card.uuid, "Acme Corp is an organization in Ohio.")
        result = orcs_store.analyze_references(acme.id, NO_ALIASES, filenames=["notes.txt"])
        user_ref = next(r for r in result.untagged if r.region == "user_added")
        assert "Context mentions organization" in user_ref.reasons
        assert user_ref.confidence == pytest.approx(1.0)

    def test_results_capped(self, orcs_store, acme):
        orcs_store.analyzer.settings = AnalysisSettings(max_untagged=1)
        result = orcs_store.analyze_references(acme.id, AliasPolicy(True, True, True))
        assert result.total_untagged_count == 1

    def test_unknown_context(self, orcs_store, acme):
        with pytest.raises(ValidationError):
            orcs_store.analyze_references(acme.id, context="galaxy")

    def test_unknown_tag(self, orcs_store):
        with pytest.raises(NotFound):
            orcs_store.analyze_references("missing")

    def test_to_dict(self, orcs_store, acme):
        data = orcs_store.analyze_references(acme.id, NO_ALIASES).to_dict()
        assert data["total_tagged_count"] == 1
        assert data["untagged"][0]["text"] == "Acme Corp"


class TestHelpers:

    def test_context_trimmed_to_sentence(self):
        text = "First sentence. Acme Corp acquired Globex. Third one."
        assert extract_context(text, text.index("Acme"), 4) == "Acme Corp acquired Globex."

    def test_context_without_sentence_bounds(self):
        assert extract_context("Acme Corp acquired Globex", 0, 4, radius=10) == "Acme Corp acqu"

    def test_confidence(self):
        tag = Tag(id="t", type="entity", name="Acme Corp")
        assert calculate_confidence("Acme Corp", "Acme Corp", "", tag) == pytest.approx(0.9)
        assert calculate_confidence("Acme Corp", "acme corp", "", tag) == pytest.approx(0.8)
        assert calculate_confidence("AB", "ab", "", tag) == pytest.approx(0.6)

    @pytest.mark.parametrize("term, matched, context, entity_type", [
        ("Acme Corp", "Acme Corp", "Acme Corp is an organization.", "organization"),
        ("Acme Corp", "acme corp", "", None),
        ("Acme", "ACME", "the organization", "organization"),
        ("AB", "ab", "", None),
        ("A", "A", "an organization", "organization"),
        ("x", "y", "", None),
        ("Acme Corp", "Acme", "", "organization"),
        ("", "", "", ""),
    ])
    def test_confidence_bounded(self, term, matched, context, entity_type):
        tag = Tag(id="t", type="entity", name="Acme Corp", entity_type=entity_type)
        confidence = calculate_confidence(term, matched, context, tag)
        assert 0.0 <= confidence <= 1.0

    def test_confidence_clamped_at_one(self):
        tag = Tag(id="t", type="entity", name="Acme Corp", entity_type="organization")
        assert calculate_confidence("Acme Corp", "Acme Corp", "an organization", tag) == pytest.approx(1.0)

    def test_reasons_without_entity_type(self):
        tag = Tag(id="t", type="entity", name="Acme Corp")
        assert match_reasons("Acme Corp", "acme corp", "anything", tag) == ["Exact name match"]

    def test_strip_with_offsets(self):
        marked = "x [entity:Acme](t1) y"
        stripped, offsets = strip_with_offsets(marked)
        assert stripped == "x Acme y"
        assert marked[offsets[2]:offsets[5] + 1] == "Acme"
        assert marked[offsets[-1]] == "y"
