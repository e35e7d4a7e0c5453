"""
Tests for atomic single-file and staged multi-file writes.
"""

import pytest

from orcs.staging import StagedWrite, atomic_write


def _temp_files(directory):
    return [p for p in directory.iterdir() if p.name.endswith(".tmp")]


def test_atomic_write_text_and_bytes(tmp_path):
    path = tmp_path / "sub" / "a.txt"
    atomic_write(path, "line\r\n")
    assert path.read_bytes() == b"line\r\n"
    atomic_write(path, b"\xff\xfe raw")
    assert path.read_bytes() == b"\xff\xfe raw"
    assert _temp_files(path.parent) == []


class TestStagedWrite:

    def test_commits_all_files(self, tmp_path):
        a, b = tmp_path / "a.txt", tmp_path / "b.txt"
        a.write_text("old a")
        with StagedWrite() as staged:
            staged.write(a, "new a")
            staged.write(b, "new b")
            # Nothing replaced until the block exits
            assert a.read_text() == "old a"
        assert a.read_text() == "new a"
        assert b.read_text() == "new b"

    def test_later_write_to_same_path_wins(self, tmp_path):
        a = tmp_path / "a.txt"
        with StagedWrite() as staged:
            staged.write(a, "first")
            staged.write(a, "second")
        assert a.read_text() == "second"

    def test_exception_in_block_writes_nothing(self, tmp_path):
        a = tmp_path / "a.txt"
        a.write_text("old")
        with pytest.raises(RuntimeError):
            with StagedWrite() as staged:
                staged.write(a, "new")
                raise RuntimeError("boom")
        assert a.read_text() == "old"
        assert _temp_files(tmp_path) == []

    def test_staging_failure_leaves_originals(self, tmp_path):
        a = tmp_path / "a.txt"
        a.write_text("old")
        blocker = tmp_path / "blocker"
        blocker.write_text("a file, not a directory")
        staged = StagedWrite()
        staged.write(a, "new")
        staged.write(blocker / "x.txt", "unreachable")
        with pytest.raises(OSError):
            staged.commit()
        assert a.read_text() == "old"
        assert _temp_files(tmp_path) == []

    def test_removals_happen_after_writes(self, tmp_path):
        old, new = tmp_path / "old.txt", tmp_path / "new.txt"
        old.write_text("content")
        with StagedWrite() as staged:
            staged.write(new, "content")
            staged.remove(old)
        assert new.exists()
        assert not old.exists()

    def test_commit_twice_is_noop(self, tmp_path):
        staged = StagedWrite()
        staged.write(tmp_path / "a.txt", "x")
        assert staged.commit() == [tmp_path / "a.txt"]
        assert staged.commit() == []
