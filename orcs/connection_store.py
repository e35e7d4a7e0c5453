"""
Explicit connections between entity tags, one JSON file each.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from pathlib import Path
from typing import Optional

from .errors import NotFound, ValidationError
from .staging import StagedWrite, atomic_write
from .types import Connection, Direction, InsertConnection, new_id, utc_now

logger = logging.getLogger(__name__)

CONNECTIONS_DIR = "connections"

UPDATABLE_FIELDS = frozenset({
    "source_tag_id",
    "target_tag_id",
    "relationship_tag_id",
    "attribute_tag_ids",
    "kind",
    "direction",
    "strength",
    "notes",
})


def validate_connection(conn) -> None:
    """
    Raises:
        ValidationError: If endpoints are missing or strength/direction are out of range
    """
    if not conn.source_tag_id or not conn.target_tag_id:
        raise ValidationError("Connections need a source and a target tag")
    try:
        strength = float(conn.strength)
    except (TypeError, ValueError):
        raise ValidationError(f"Strength must be a number, got {conn.strength!r}")
    if not 0.0 <= strength <= 1.0:
        raise ValidationError(f"Strength must be between 0 and 1, got {strength}")
    if conn.direction not in tuple(Direction):
        raise ValidationError(f"Direction must be 0-3, got {conn.direction!r}")


def _from_dict(data: dict) -> Connection:
    return Connection(
        id=data["id"],
        source_tag_id=data["source_tag_id"],
        target_tag_id=data["target_tag_id"],
        relationship_tag_id=data.get("relationship_tag_id"),
        attribute_tag_ids=list(data.get("attribute_tag_ids") or []),
        kind=data.get("kind", "entity_relationship"),
        direction=int(data.get("direction", Direction.FORWARD)),
        strength=float(data.get("strength", 1.0)),
        notes=data.get("notes", ""),
        created=data.get("created", ""),
        modified=data.get("modified", ""),
    )


def _to_json(conn: Connection) -> str:
    return json.dumps(conn.to_dict(), indent=2, ensure_ascii=False) + "\n"


class ConnectionStore:
    """Filesystem-backed connection store under ``<root>/connections``."""

    def __init__(self, root: Path):
        self.dir = Path(root) / CONNECTIONS_DIR
        self.dir.mkdir(parents=True, exist_ok=True)

    def _path(self, conn_id: str) -> Path:
        return self.dir / f"{conn_id}.json"

    def _load(self, path: Path) -> Optional[Connection]:
        try:
            return _from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Skipping unreadable connection %s: %s", path.name, e)
            return None

    def create(self, insert: InsertConnection) -> Connection:
        validate_connection(insert)
        now = utc_now()
        conn = Connection(
            id=new_id(),
            source_tag_id=insert.source_tag_id,
            target_tag_id=insert.target_tag_id,
            relationship_tag_id=insert.relationship_tag_id or None,
            attribute_tag_ids=list(insert.attribute_tag_ids),
            kind=insert.kind,
            direction=int(insert.direction),
            strength=float(insert.strength),
            notes=insert.notes,
            created=now,
            modified=now,
        )
        atomic_write(self._path(conn.id), _to_json(conn))
        logger.info("Created connection %s (%s -> %s)", conn.id, conn.source_tag_id, conn.target_tag_id)
        return conn

    def get(self, conn_id: str) -> Optional[Connection]:
        path = self._path(conn_id)
        if not path.is_file():
            return None
        return self._load(path)

    def list(self) -> list[Connection]:
        try:
            paths = sorted(self.dir.glob("*.json"))
        except OSError as e:
            logger.warning("Cannot read %s: %s", self.dir, e)
            return []
        return [c for c in (self._load(p) for p in paths) if c is not None]

    def list_for_tag(self, tag_id: str) -> list[Connection]:
        """Connections touching tag_id in any position."""
        return [
            c for c in self.list()
            if tag_id in (c.source_tag_id, c.target_tag_id, c.relationship_tag_id)
            or tag_id in c.attribute_tag_ids
        ]

    def update(self, conn_id: str, **changes) -> Connection:
        """
        Raises:
            NotFound: If the connection does not exist
            ValidationError: If the result would be invalid
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown connection fields: {', '.join(sorted(unknown))}")
        current = self.get(conn_id)
        if current is None:
            raise NotFound("connection", conn_id)
        updated = dataclasses.replace(current, **changes, modified=utc_now())
        validate_connection(updated)
        updated = dataclasses.replace(
            updated, direction=int(updated.direction), strength=float(updated.strength)
        )
        atomic_write(self._path(conn_id), _to_json(updated))
        logger.info("Updated connection %s", conn_id)
        return updated

    def delete(self, conn_id: str) -> bool:
        path = self._path(conn_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.info("Deleted connection %s", conn_id)
        return True

    def rewrite_endpoints(self, old_ids, new_id: str) -> int:
        """
        Point source/target endpoints at new_id where they held any of old_ids.

        Relationship and attribute positions are left unchanged. Returns the
        number of connections rewritten.
        """
        old = set(old_ids)
        now = utc_now()
        with StagedWrite() as staged:
            for conn in self.list():
                source = new_id if conn.source_tag_id in old else conn.source_tag_id
                target = new_id if conn.target_tag_id in old else conn.target_tag_id
                if (source, target) == (conn.source_tag_id, conn.target_tag_id):
                    continue
                updated = dataclasses.replace(
                    conn, source_tag_id=source, target_tag_id=target, modified=now
                )
                staged.write(self._path(conn.id), _to_json(updated))
        if len(staged):
            logger.info("Rewrote %d connections to %s", len(staged), new_id)
        return len(staged)
