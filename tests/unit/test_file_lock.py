"""Tests for the mkdir-based FileLock."""

import os
from unittest.mock import patch

import pytest

from claude_workflow.utils.file_lock import FileLock


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_lock(tmp_path, owner="widget"):
    return FileLock(tmp_path / ".lock", owner=owner)


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestFileLock:
    def test_acquire_and_release(self, tmp_path):
        lock = _make_lock(tmp_path)

        assert lock.acquire() is True
        assert lock.acquired
        assert (tmp_path / ".lock" / "pid").read_text() == str(os.getpid())

        lock.release()
        assert not lock.acquired
        assert not (tmp_path / ".lock").exists()

    def test_second_holder_is_refused_immediately(self, tmp_path):
        first = _make_lock(tmp_path)
        second = _make_lock(tmp_path)

        assert first.acquire() is True
        assert second.acquire() is False
        first.release()
        assert second.acquire() is True
        second.release()

    def test_acquire_twice_on_same_instance_fails(self, tmp_path):
        lock = _make_lock(tmp_path)
        assert lock.acquire() is True
        assert lock.acquire() is False
        lock.release()

    def test_release_when_not_held_is_noop(self, tmp_path):
        other = _make_lock(tmp_path)
        other.acquire()

        lock = _make_lock(tmp_path)
        lock.release()

        assert (tmp_path / ".lock").exists()
        other.release()

    def test_lock_without_pid_file_is_stale(self, tmp_path):
        (tmp_path / ".lock").mkdir()
        lock = _make_lock(tmp_path)
        assert lock.acquire() is True
        lock.release()

    def test_lock_with_invalid_pid_is_stale(self, tmp_path):
        (tmp_path / ".lock").mkdir()
        (tmp_path / ".lock" / "pid").write_text("not-a-pid")
        lock = _make_lock(tmp_path)
        assert lock.acquire() is True
        lock.release()

    def test_lock_of_dead_process_is_taken_over(self, tmp_path):
        (tmp_path / ".lock").mkdir()
        (tmp_path / ".lock" / "pid").write_text("999999")
        lock = _make_lock(tmp_path)

        with patch("claude_workflow.utils.file_lock.os.kill", side_effect=ProcessLookupError):
            assert lock.acquire() is True

        assert (tmp_path / ".lock" / "pid").read_text() == str(os.getpid())
        lock.release()

    def test_lock_of_unsignalable_process_is_respected(self, tmp_path):
        (tmp_path / ".lock").mkdir()
        (tmp_path / ".lock" / "pid").write_text("1")
        lock = _make_lock(tmp_path)

        with patch("claude_workflow.utils.file_lock.os.kill", side_effect=PermissionError):
            assert lock.acquire() is False

    def test_context_manager(self, tmp_path):
        with _make_lock(tmp_path) as lock:
            assert lock.acquired
            with pytest.raises(RuntimeError, match="Could not acquire lock for widget"):
                with _make_lock(tmp_path):
                    pass
        assert not (tmp_path / ".lock").exists()
