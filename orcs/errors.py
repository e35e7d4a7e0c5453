"""
Exceptions and error logging for orcs.

Lookups return None/False for absent items; the exceptions below are raised
by operations that cannot proceed without the item or that reject input.
The CLI logs full stack traces for debugging while showing clean messages
to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class OrcsError(Exception):
    """Base class for orcs errors."""


class NotFound(OrcsError):
    """A file, card, tag or connection does not exist."""

    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind} not found: {key}")
        self.kind = kind
        self.key = key


class ValidationError(OrcsError, ValueError):
    """Malformed input to a create/update; raised before any file write."""


class StructuralParseError(OrcsError):
    """A card or tag file is missing its expected delimiters or fields."""

    def __init__(self, path: str, detail: str):
        super().__init__(f"{path}: {detail}")
        self.path = path
        self.detail = detail


class IntegrityMismatch(OrcsError):
    """Card content diverges from its source file."""

    def __init__(self, report):
        tokens = ", ".join(report.missing_tokens) or "content differs"
        super().__init__(f"{report.source_file}: {tokens}")
        self.report = report


class RebuildInProgress(OrcsError):
    """A full index build is running; wait and retry."""


class OrphanedReference(OrcsError):
    """A tag references a card that no longer exists."""

    def __init__(self, tag_id: str, reference: str):
        super().__init__(f"tag {tag_id} references missing card {reference}")
        self.tag_id = tag_id
        self.reference = reference


def _error_log_path(store_path: Optional[Path] = None) -> Path:
    """Resolve error log path, respecting ORCS_STORE_PATH."""
    if store_path is not None:
        return Path(store_path) / "orcs-errors.log"
    store = os.environ.get("ORCS_STORE_PATH")
    if store:
        return Path(store) / "orcs-errors.log"
    return Path.home() / ".orcs" / "orcs-errors.log"


def log_exception(exc: Exception, context: str = "", store_path: Optional[Path] = None) -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)
        store_path: Store directory; defaults to ORCS_STORE_PATH or ~/.orcs

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path(store_path)
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Can't write error log
    return log_path
