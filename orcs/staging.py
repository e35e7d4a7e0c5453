"""
Atomic file writes.

``atomic_write`` replaces one file via a temp file in the same directory.
``StagedWrite`` does the same for a group of files: every new content is
written to a temp file first, and the renames only happen once all writes
have succeeded. Any failure during staging removes the temp files and leaves
every original untouched.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)


def _write_temp(path: Path, content: Union[str, bytes]) -> Path:
    """Write content to a fresh temp file beside ``path`` and return it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        if isinstance(content, bytes):
            f = os.fdopen(fd, "wb")
        else:
            f = os.fdopen(fd, "w", encoding="utf-8", newline="")
        with f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
    except BaseException:
        _unlink_quietly(Path(temp_path))
        raise
    return Path(temp_path)


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not remove temp file %s: %s", path, e)


def atomic_write(path: Path, content: Union[str, bytes]) -> None:
    """Replace ``path`` with ``content`` in one rename."""
    path = Path(path)
    temp = _write_temp(path, content)
    try:
        os.replace(temp, path)
    except BaseException:
        _unlink_quietly(temp)
        raise


class StagedWrite:
    """
    Collect writes to several files and commit them together.

    Example:
        with StagedWrite() as staged:
            staged.write(card_a, text_a)
            staged.write(card_b, text_b)
        # both files replaced, or neither if staging failed

    The context manager commits on a clean exit and rolls back (discarding
    temp files) when the block raises.
    """

    def __init__(self) -> None:
        self._pending: dict[Path, Union[str, bytes]] = {}
        self._removals: list[Path] = []
        self._staged: list[tuple[Path, Path]] = []
        self._committed = False

    def write(self, path: Path, content: Union[str, bytes]) -> None:
        """Queue new content for ``path``. A later write to the same path wins."""
        self._pending[Path(path)] = content

    def remove(self, path: Path) -> None:
        """Queue ``path`` for deletion after all writes are in place."""
        self._removals.append(Path(path))

    @property
    def paths(self) -> list[Path]:
        return list(self._pending)

    def __len__(self) -> int:
        return len(self._pending) + len(self._removals)

    def commit(self) -> list[Path]:
        """
        Stage every queued write, then rename all of them into place.

        Returns:
            The paths that were written

        Raises:
            OSError: If staging fails; no original file has been modified.
        """
        if self._committed:
            return []
        try:
            for path, content in self._pending.items():
                self._staged.append((_write_temp(path, content), path))
        except BaseException:
            self.rollback()
            raise

        written: list[Path] = []
        for temp, path in self._staged:
            os.replace(temp, path)
            written.append(path)
        self._staged.clear()

        for path in self._removals:
            try:
                path.unlink()
            except FileNotFoundError:
                pass
        self._committed = True
        logger.debug("Committed %d staged writes", len(written))
        return written

    def rollback(self) -> None:
        """Discard every staged temp file."""
        for temp, _path in self._staged:
            _unlink_quietly(temp)
        self._staged.clear()
        self._pending.clear()
        self._removals.clear()

    def __enter__(self) -> "StagedWrite":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> Optional[bool]:
        if exc_type is None:
            self.commit()
        else:
            self.rollback()
        return None
