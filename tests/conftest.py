"""
Shared pytest fixtures for orcs tests.

Every store lives under tmp_path; the delayed background index build is
disabled so tests control when the index is built.
"""

from pathlib import Path

import pytest

from orcs.api import Orcs
from orcs.card_store import CardStore
from orcs.tag_store import TagStore


BRIEF = b"Acme Corp acquired Globex."
NOTES = b"Analysts expect Acme Corp to grow."


@pytest.fixture
def store_root(tmp_path) -> Path:
    return tmp_path / "store"


@pytest.fixture
def orcs_store(store_root):
    """A fresh Orcs store without the background initial build."""
    with Orcs(store_root, auto_build=False) as store:
        yield store


@pytest.fixture
def brief_card(orcs_store):
    return orcs_store.upload("brief.txt", BRIEF)


@pytest.fixture
def notes_card(orcs_store):
    return orcs_store.upload("notes.txt", NOTES)


@pytest.fixture
def card_store(store_root) -> CardStore:
    return CardStore(store_root)


@pytest.fixture
def tag_store(store_root, card_store) -> TagStore:
    return TagStore(store_root, card_store)
