"""
Tests for explicit connections between entity tags.
"""

import json

import pytest

from orcs.connection_store import ConnectionStore
from orcs.errors import NotFound, ValidationError
from orcs.types import Direction, InsertConnection


@pytest.fixture
def connections(tmp_path):
    return ConnectionStore(tmp_path)


def test_create_and_get(connections):
    conn = connections.create(InsertConnection("e-acme", "e-globex", relationship_tag_id="r-1", strength=0.5))
    path = connections.dir / f"{conn.id}.json"
    data = json.loads(path.read_text())
    assert data["source_tag_id"] == "e-acme"
    assert data["strength"] == 0.5
    assert connections.get(conn.id) == conn
    assert connections.get("missing") is None


@pytest.mark.parametrize("insert", [
    InsertConnection("", "e-globex"),
    InsertConnection("e-acme", ""),
    InsertConnection("e-acme", "e-globex", strength=1.5),
    InsertConnection("e-acme", "e-globex", strength=-0.1),
    InsertConnection("e-acme", "e-globex", direction=4),
])
def test_validation(connections, insert):
    with pytest.raises(ValidationError):
        connections.create(insert)
    assert connections.list() == []


def test_list_for_tag_any_position(connections):
    a = connections.create(InsertConnection("e-1", "e-2"))
    b = connections.create(InsertConnection("e-3", "e-4", relationship_tag_id="r-1"))
    c = connections.create(InsertConnection("e-5", "e-6", attribute_tag_ids=["at-1"]))
    assert connections.list_for_tag("e-2") == [a]
    assert connections.list_for_tag("r-1") == [b]
    assert connections.list_for_tag("at-1") == [c]


def test_update(connections):
    conn = connections.create(InsertConnection("e-1", "e-2"))
    updated = connections.update(conn.id, direction=Direction.BIDIRECTIONAL, notes="both ways")
    assert updated.direction == 3
    assert connections.get(conn.id).notes == "both ways"
    with pytest.raises(ValidationError):
        connections.update(conn.id, strength=2)
    with pytest.raises(ValidationError):
        connections.update(conn.id, colour="red")
    with pytest.raises(NotFound):
        connections.update("missing", notes="x")


def test_delete(connections):
    conn = connections.create(InsertConnection("e-1", "e-2"))
    assert connections.delete(conn.id)
    assert not connections.delete(conn.id)


def test_rewrite_endpoints(connections):
    a = connections.create(InsertConnection("dup", "e-2"))
    b = connections.create(InsertConnection("e-3", "dup", relationship_tag_id="dup"))
    untouched = connections.create(InsertConnection("e-3", "e-4"))
    assert connections.rewrite_endpoints(["dup"], "master") == 2
    assert connections.get(a.id).source_tag_id == "master"
    rewritten = connections.get(b.id)
    assert rewritten.target_tag_id == "master"
    # Relationship position is not an endpoint
    assert rewritten.relationship_tag_id == "dup"
    assert connections.get(untouched.id) == untouched


def test_unreadable_file_skipped(connections):
    conn = connections.create(InsertConnection("e-1", "e-2"))
    (connections.dir / "broken.json").write_text("{not json")
    assert connections.list() == [conn]
