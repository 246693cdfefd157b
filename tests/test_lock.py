"""Tests for the working-directory lock."""

import asyncio
import json
import os
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from mdown.exceptions import LockHeldError
from mdown.models.catalog import LockRecord
from mdown.storage.lock import LockManager, SharedSessionLock


def _write_marker(path: Path, pid: int, created_at: float) -> None:
    path.write_text(json.dumps({"pid": pid, "created_at": created_at, "version": "x"}))


class TestLockManager:
    """Mutual exclusion and stale-lock handling."""

    def test_acquire_writes_owner_record(self, tmp_path: Path) -> None:
        lock = LockManager(tmp_path / ".mdown.lock")
        record = lock.acquire()

        assert lock.held
        assert record.pid == os.getpid()
        stored = LockRecord.from_json((tmp_path / ".mdown.lock").read_text(), lock.path)
        assert stored.pid == record.pid
        assert stored.created_at == record.created_at

    def test_live_marker_blocks_second_instance(self, tmp_path: Path) -> None:
        first = LockManager(tmp_path / ".mdown.lock")
        first.acquire()

        with pytest.raises(LockHeldError, match="multiple instances"):
            LockManager(tmp_path / ".mdown.lock").acquire()
        assert first.path.exists()

    @pytest.mark.asyncio
    async def test_concurrent_acquire_has_exactly_one_winner(self, tmp_path: Path) -> None:
        """Eight threads race for the lock; only one may hold it."""
        locks = [LockManager(tmp_path / ".mdown.lock") for _ in range(8)]

        results = await asyncio.gather(
            *(asyncio.to_thread(lock.acquire) for lock in locks), return_exceptions=True
        )

        winners = [r for r in results if isinstance(r, LockRecord)]
        losers = [r for r in results if isinstance(r, LockHeldError)]
        assert len(winners) == 1
        assert len(losers) == 7

    def test_marker_of_dead_process_is_taken_over(self, tmp_path: Path) -> None:
        path = tmp_path / ".mdown.lock"
        _write_marker(path, pid=999999, created_at=time.time())

        with patch("mdown.storage.lock.psutil.pid_exists", return_value=False):
            record = LockManager(path).acquire()

        assert record.pid == os.getpid()
        assert json.loads(path.read_text())["pid"] == os.getpid()

    def test_marker_older_than_max_age_is_stale(self, tmp_path: Path) -> None:
        path = tmp_path / ".mdown.lock"
        _write_marker(path, pid=os.getpid(), created_at=1_000.0)

        fresh_clock = LockManager(path, clock=lambda: 1_000.0 + 60)
        with pytest.raises(LockHeldError):
            fresh_clock.acquire()

        later_clock = LockManager(path, clock=lambda: 1_000.0 + 2 * 86400)
        record = later_clock.acquire()
        assert record.created_at == 1_000.0 + 2 * 86400

    def test_recent_unreadable_marker_is_respected(self, tmp_path: Path) -> None:
        path = tmp_path / ".mdown.lock"
        path.write_text("")

        with pytest.raises(LockHeldError, match="another process"):
            LockManager(path).acquire()

    def test_old_unreadable_marker_is_stale(self, tmp_path: Path) -> None:
        path = tmp_path / ".mdown.lock"
        path.write_text("{garbage")
        old = time.time() - 3600
        os.utime(path, (old, old))

        assert LockManager(path).acquire().pid == os.getpid()

    def test_unreadable_marker_staleness_follows_the_clock(self, tmp_path: Path) -> None:
        path = tmp_path / ".mdown.lock"
        path.write_text("{garbage")
        written = path.stat().st_mtime

        with pytest.raises(LockHeldError):
            LockManager(path, clock=lambda: written + 1).acquire()

        record = LockManager(path, clock=lambda: written + 60).acquire()
        assert record.created_at == written + 60

    def test_interleaved_takeovers_leave_one_holder(self, tmp_path: Path) -> None:
        """A takeover that lost the race must not delete the winner's fresh marker."""
        path = tmp_path / ".mdown.lock"
        _write_marker(path, pid=999999, created_at=time.time())
        first = LockManager(path)
        second = LockManager(path)
        inspect = second._inspect
        interleaved = []

        def inspect_then_let_first_win():
            result = inspect()
            if not interleaved:
                interleaved.append(result)
                first.acquire()
            return result

        second._inspect = inspect_then_let_first_win
        alive = patch(
            "mdown.storage.lock.psutil.pid_exists", side_effect=lambda pid: pid != 999999
        )
        with alive:
            with pytest.raises(LockHeldError):
                second.acquire()

        assert first.held
        assert not second.held
        assert second.read().created_at == first._record.created_at
        assert not (tmp_path / ".mdown.lock.takeover").exists()

    def test_abandoned_takeover_guard_is_cleared(self, tmp_path: Path) -> None:
        path = tmp_path / ".mdown.lock"
        _write_marker(path, pid=999999, created_at=time.time())
        guard = tmp_path / ".mdown.lock.takeover"
        guard.write_text("")
        old = time.time() - 3600
        os.utime(guard, (old, old))

        with patch("mdown.storage.lock.psutil.pid_exists", return_value=False):
            with pytest.raises(LockHeldError):
                LockManager(path).acquire()
            assert not guard.exists()
            assert LockManager(path).acquire().pid == os.getpid()

    def test_release_removes_own_marker_only(self, tmp_path: Path) -> None:
        path = tmp_path / ".mdown.lock"
        lock = LockManager(path)
        lock.acquire()
        lock.release()
        assert not path.exists()

        lock.acquire()
        _write_marker(path, pid=4242, created_at=12.0)
        lock.release()
        assert path.exists()
        assert not lock.held

    def test_context_manager_releases_on_error(self, tmp_path: Path) -> None:
        path = tmp_path / ".mdown.lock"
        with pytest.raises(RuntimeError):
            with LockManager(path):
                assert path.exists()
                raise RuntimeError("boom")
        assert not path.exists()

    def test_force_delete_removes_foreign_marker(self, tmp_path: Path) -> None:
        path = tmp_path / ".mdown.lock"
        LockManager(path).acquire()

        other = LockManager(path)
        assert other.force_delete() is True
        assert other.force_delete() is False
        other.acquire()
        assert other.held


class TestSharedSessionLock:
    def test_takes_no_marker(self, tmp_path: Path) -> None:
        lock = SharedSessionLock()
        with lock:
            assert not lock.held
        assert list(tmp_path.iterdir()) == []
