"""
Protocol definitions for an orcs store and its flat-file backends.

Defines interface contracts at two levels:
- OrcsProtocol: the public API (CLI, embedding applications)
- CardStoreProtocol / TagStoreProtocol: the flat-file stores the index
  service and analysis engine read from
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from .types import (
    Card,
    Connection,
    DeletePreview,
    DeleteResult,
    InsertConnection,
    InsertTag,
    IntegrityReport,
    RestoreResult,
    Tag,
)


@runtime_checkable
class OrcsProtocol(Protocol):
    """
    The public interface for card, tag and connection operations.

    Implemented by:
    - Orcs (local flat-file store)
    """

    # -- Documents --

    def upload(self, filename: str, content: bytes) -> Card: ...

    def list_cards(self) -> list[Card]: ...

    def get_card(self, card_id: str) -> Card: ...

    def append_user_text(self, card_id: str, text: str) -> str: ...

    def clear_user_added_text(self, card_id: str) -> str: ...

    def verify_integrity(self, card_id: str) -> IntegrityReport: ...

    def restore_original_content(self, card_id: str) -> RestoreResult: ...

    def delete_document(self, name: str) -> DeleteResult: ...

    # -- Tags --

    def create_tag(self, insert: InsertTag) -> Tag: ...

    def get_tag(self, tag_id: str) -> Optional[Tag]: ...

    def list_tags(self, tag_type: Optional[str] = None) -> list[Tag]: ...

    def update_tag(self, tag_id: str, **changes) -> Tag: ...

    def preview_delete_tag(self, tag_id: str) -> DeletePreview: ...

    def delete_tag(self, tag_id: str) -> bool: ...

    def merge_tags(self, master_id: str, merge_ids: list[str], *, dry_run: bool = False): ...

    # -- Connections --

    def create_connection(self, insert: InsertConnection) -> Connection: ...

    def list_connections(self, tag_id: Optional[str] = None) -> list[Connection]: ...

    def delete_connection(self, conn_id: str) -> bool: ...

    # -- Index and analysis --

    def get_index(self): ...

    def reindex(self, gc: bool = False, dry_run: bool = False): ...

    def analyze_references(self, tag_id: str, policy=None, context: str = "repository", filenames=None): ...

    # -- Lifecycle --

    def close(self) -> None: ...


@runtime_checkable
class CardStoreProtocol(Protocol):
    """Card persistence as seen by the index and analysis layers."""

    raw_dir: Path

    def list_cards(self) -> list[Card]: ...

    def list_raw_files(self) -> list[Path]: ...

    def read_card(self, card_id: str) -> Card: ...

    def card_exists(self, filename: str) -> bool: ...


@runtime_checkable
class TagStoreProtocol(Protocol):
    """Tag persistence as seen by the index and merge layers."""

    def list(self) -> list[Tag]: ...

    def get(self, tag_id: str) -> Optional[Tag]: ...

    def find_tag_file(self, tag_id: str) -> Optional[Path]: ...

    def tag_path(self, tag: Tag) -> Path: ...
