"""Tests for repo_intern.engine.process_lock module."""

import json
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from unittest.mock import patch

import pytest

from repo_intern.engine import process_lock
from repo_intern.engine.process_lock import LockRecord, ProcessLock, pid_exists
from repo_intern.enums import ErrorKind
from repo_intern.exceptions import LockContentionError

DEAD_PID = 999_999_999


def write_record(lock: ProcessLock, pid: int) -> None:
    lock.lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock.lock_path.write_text(
        json.dumps({"pid": pid, "timestamp": "2024-01-01T00:00:00+00:00", "working_dir": str(lock.working_dir)})
    )


class TestPidExists:
    def test_current_process_exists(self):
        """Should report the running test process as alive."""
        assert pid_exists(os.getpid()) is True

    def test_invalid_pids(self):
        """Should treat zero and negative pids as dead."""
        assert pid_exists(0) is False
        assert pid_exists(-5) is False

    def test_permission_error_means_alive(self):
        """Should treat EPERM as an existing process owned by someone else."""
        with patch("repo_intern.engine.process_lock.os.kill", side_effect=PermissionError):
            assert pid_exists(1) is True

    def test_lookup_error_means_dead(self):
        with patch("repo_intern.engine.process_lock.os.kill", side_effect=ProcessLookupError):
            assert pid_exists(12345) is False


class TestLockRecord:
    def test_json_uses_wire_keys(self):
        """Should serialize with pid, timestamp and working_dir keys."""
        record = LockRecord(owner_pid=42, acquired_at="2024-01-01T00:00:00", working_directory="/repo")

        data = json.loads(record.to_json())

        assert data == {"pid": 42, "timestamp": "2024-01-01T00:00:00", "working_dir": "/repo"}

    @pytest.mark.parametrize("text", ["not json", "[1, 2]", '{"pid": "12"}', '{"pid": 0}', '{"pid": true}'])
    def test_rejects_invalid_records(self, text: str):
        with pytest.raises(ValueError):
            LockRecord.from_json(text)


class TestAcquire:
    def test_acquire_on_free_directory(self, tmp_path: Path):
        """Should grant the lock and write a record naming this process."""
        lock = ProcessLock(tmp_path)

        result = lock.acquire()

        assert result.granted is True
        assert lock.is_held
        assert lock.lock_path == tmp_path.resolve() / ".repo-intern" / ".pid.lock"
        record = lock.read_record()
        assert record is not None
        assert record.owner_pid == os.getpid()
        assert record.working_directory == str(tmp_path.resolve())
        lock.release()

    def test_second_instance_is_denied_while_owner_alive(self, tmp_path: Path):
        """Should deny a second acquirer while the recorded owner is alive."""
        first = ProcessLock(tmp_path)
        second = ProcessLock(tmp_path)
        assert first.acquire().granted

        result = second.acquire()

        assert result.granted is False
        assert result.conflicting_owner_id == os.getpid()
        assert "already running" in result.message
        assert not second.is_held
        first.release()

    def test_stale_lock_is_reclaimed(self, tmp_path: Path):
        """Should supersede a record whose owner process no longer exists."""
        lock = ProcessLock(tmp_path)
        write_record(lock, DEAD_PID)

        with patch.object(process_lock, "pid_exists", side_effect=lambda pid: pid == os.getpid()):
            result = lock.acquire()

        assert result.granted is True
        assert lock.read_record().owner_pid == os.getpid()
        lock.release()

    def test_corrupt_lock_is_reclaimed(self, tmp_path: Path):
        """Should treat an unparseable record as stale."""
        lock = ProcessLock(tmp_path)
        lock.lock_path.parent.mkdir(parents=True)
        lock.lock_path.write_text("{not json")

        result = lock.acquire()

        assert result.granted is True
        assert lock.read_record().owner_pid == os.getpid()
        lock.release()

    def test_reacquire_by_holder_is_granted(self, tmp_path: Path):
        lock = ProcessLock(tmp_path)
        lock.acquire()

        result = lock.acquire()

        assert result.granted is True
        lock.release()

    def test_write_failure_denies(self, tmp_path: Path):
        """Should deny rather than raise when the record cannot be written."""
        lock = ProcessLock(tmp_path)

        with patch.object(ProcessLock, "_write", side_effect=OSError("disk full")):
            result = lock.acquire()

        assert result.granted is False
        assert "disk full" in result.message
        assert not lock.is_held

    def test_custom_lock_dir(self, tmp_path: Path):
        lock_dir = tmp_path / "locks"
        lock = ProcessLock(tmp_path / "work", lock_dir=lock_dir)

        assert lock.acquire().granted
        assert (lock_dir / ".pid.lock").exists()
        lock.release()

    def test_relative_lock_dir_is_taken_from_working_dir(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        """Should place a relative lock_dir under the working directory, not the current directory."""
        elsewhere = tmp_path / "elsewhere"
        elsewhere.mkdir()
        monkeypatch.chdir(elsewhere)

        lock = ProcessLock(tmp_path / "work", lock_dir="state/locks")

        assert lock.lock_path == (tmp_path / "work").resolve() / "state" / "locks" / ".pid.lock"
        assert lock.acquire().granted
        assert not (elsewhere / "state").exists()
        lock.release()


class TestConcurrentAcquire:
    WORKERS = 8

    def race(self, tmp_path: Path) -> list[ProcessLock]:
        barrier = threading.Barrier(self.WORKERS)
        locks = [ProcessLock(tmp_path) for _ in range(self.WORKERS)]

        def attempt(lock: ProcessLock) -> bool:
            barrier.wait()
            return lock.acquire().granted

        with ThreadPoolExecutor(max_workers=self.WORKERS) as pool:
            granted = list(pool.map(attempt, locks))
        return [lock for lock, ok in zip(locks, granted) if ok]

    def test_exactly_one_concurrent_acquire_is_granted(self, tmp_path: Path):
        winners = self.race(tmp_path)

        assert len(winners) == 1
        assert winners[0].read_record().owner_pid == os.getpid()
        winners[0].release()

    def test_guard_serializes_slow_writes(self, tmp_path: Path):
        """Should still grant a single owner when the record write is slow."""
        original = ProcessLock._write

        def slow_write(self, record):
            time.sleep(0.05)
            original(self, record)

        with patch.object(ProcessLock, "_write", slow_write):
            winners = self.race(tmp_path)

        assert len(winners) == 1
        winners[0].release()
        assert not winners[0].lock_path.exists()


class TestRelease:
    def test_release_removes_record(self, tmp_path: Path):
        lock = ProcessLock(tmp_path)
        lock.acquire()

        lock.release()

        assert not lock.lock_path.exists()
        assert not lock.is_held

    def test_release_is_idempotent(self, tmp_path: Path):
        """Should be safe to release any number of times."""
        lock = ProcessLock(tmp_path)
        lock.acquire()

        lock.release()
        lock.release()
        lock.release()

        assert not lock.lock_path.exists()

    def test_release_without_acquire_leaves_foreign_record(self, tmp_path: Path):
        """Should never remove a lock this instance does not hold."""
        owner = ProcessLock(tmp_path)
        owner.acquire()
        other = ProcessLock(tmp_path)

        other.release()

        assert owner.lock_path.exists()
        owner.release()

    def test_release_skips_record_of_other_pid(self, tmp_path: Path):
        lock = ProcessLock(tmp_path)
        lock.acquire()
        write_record(lock, os.getpid() + 1)

        lock.release()

        assert lock.read_record().owner_pid == os.getpid() + 1

    def test_lock_can_be_taken_again_after_release(self, tmp_path: Path):
        first = ProcessLock(tmp_path)
        first.acquire()
        first.release()

        assert ProcessLock(tmp_path).acquire().granted


class TestHolderAndClear:
    def test_holder_reports_live_owner(self, tmp_path: Path):
        lock = ProcessLock(tmp_path)
        lock.acquire()

        assert ProcessLock(tmp_path).holder().owner_pid == os.getpid()
        lock.release()

    def test_holder_ignores_stale_record(self, tmp_path: Path):
        lock = ProcessLock(tmp_path)
        write_record(lock, DEAD_PID)

        with patch.object(process_lock, "pid_exists", return_value=False):
            assert lock.holder() is None

    def test_clear_removes_stale_record(self, tmp_path: Path):
        lock = ProcessLock(tmp_path)
        write_record(lock, DEAD_PID)

        with patch.object(process_lock, "pid_exists", return_value=False):
            assert lock.clear() is True

        assert not lock.lock_path.exists()

    def test_clear_refuses_live_owner_without_force(self, tmp_path: Path):
        owner = ProcessLock(tmp_path)
        owner.acquire()

        assert ProcessLock(tmp_path).clear() is False
        assert ProcessLock(tmp_path).clear(force=True) is True
        assert not owner.lock_path.exists()

    def test_clear_on_free_lock(self, tmp_path: Path):
        assert ProcessLock(tmp_path).clear() is False


class TestContextManagers:
    def test_sync_context_manager(self, tmp_path: Path):
        with ProcessLock(tmp_path) as lock:
            assert lock.is_held
            assert lock.lock_path.exists()

        assert not lock.lock_path.exists()

    def test_contention_raises(self, tmp_path: Path):
        """Should raise LockContentionError carrying the owner pid."""
        with ProcessLock(tmp_path):
            with pytest.raises(LockContentionError) as exc_info:
                with ProcessLock(tmp_path):
                    pass

        assert exc_info.value.owner_pid == os.getpid()
        assert exc_info.value.kind == ErrorKind.CONTENTION

    def test_released_after_exception(self, tmp_path: Path):
        lock = ProcessLock(tmp_path)

        with pytest.raises(RuntimeError):
            with lock:
                raise RuntimeError("boom")

        assert not lock.lock_path.exists()

    @pytest.mark.asyncio
    async def test_async_context_manager(self, tmp_path: Path):
        async with ProcessLock(tmp_path) as lock:
            assert lock.is_held
            with pytest.raises(LockContentionError):
                async with ProcessLock(tmp_path):
                    pass

        assert not lock.lock_path.exists()
