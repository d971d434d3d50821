"""Cross-process mutex for a working directory.

A JSON record at ``<working_dir>/.repo-intern/.pid.lock`` names the process
that owns the working directory. The read-check-write sequence is serialized by
an OS-level ``filelock`` guard so two acquirers can never both win.

The record outlives crashes on purpose: the next acquirer probes the recorded
pid and supersedes the record when that process is gone (or when the file is
unreadable).

Example:
    >>> lock = ProcessLock(Path.cwd())
    >>> result = lock.acquire()
    >>> if not result.granted:
    ...     print(result.message)
    >>> lock.release()

    >>> async with ProcessLock(repo_dir):
    ...     await runner.run_task(task)
"""

import asyncio
import contextlib
import json
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog
from filelock import FileLock, Timeout

from repo_intern.exceptions import LockContentionError, PersistenceError

log = structlog.get_logger(__name__)

LOCK_DIR_NAME = ".repo-intern"
LOCK_FILE_NAME = ".pid.lock"
GUARD_SUFFIX = ".guard"


def pid_exists(pid: int) -> bool:
    """Probe process liveness with signal 0.

    PermissionError means the process exists but belongs to another user.
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


@dataclass(frozen=True)
class LockRecord:
    """Ownership record persisted in the lock file."""

    owner_pid: int
    acquired_at: str
    working_directory: str

    def to_json(self) -> str:
        return json.dumps(
            {
                "pid": self.owner_pid,
                "timestamp": self.acquired_at,
                "working_dir": self.working_directory,
            },
            indent=2,
        )

    @classmethod
    def from_json(cls, text: str) -> "LockRecord":
        """Parse a record, raising ValueError when it is not a valid record."""
        try:
            data: Any = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"lock record is not JSON: {e}") from e
        if not isinstance(data, dict):
            raise ValueError("lock record is not an object")
        pid = data.get("pid")
        if not isinstance(pid, int) or isinstance(pid, bool) or pid <= 0:
            raise ValueError(f"lock record has invalid pid: {pid!r}")
        return cls(
            owner_pid=pid,
            acquired_at=str(data.get("timestamp", "")),
            working_directory=str(data.get("working_dir", "")),
        )


@dataclass(frozen=True)
class LockAcquisition:
    """Result of an acquisition attempt."""

    granted: bool
    message: str
    conflicting_owner_id: int | None = None


class ProcessLock:
    """Advisory single-host lock over a working directory.

    Args:
        working_dir: Directory being protected
        lock_dir: Override for the directory holding the lock file; a relative
            path is taken from ``working_dir``, not the current directory
        guard_timeout: Seconds to wait for the filelock guard
    """

    def __init__(
        self,
        working_dir: Path | str,
        lock_dir: Path | str | None = None,
        guard_timeout: float = 10.0,
    ) -> None:
        self.working_dir = Path(working_dir).resolve()
        base = self.working_dir / lock_dir if lock_dir else self.working_dir / LOCK_DIR_NAME
        self.lock_path = base / LOCK_FILE_NAME
        self.guard_path = base / f"{LOCK_FILE_NAME}{GUARD_SUFFIX}"
        self.guard_timeout = guard_timeout
        self._held = False

    @property
    def is_held(self) -> bool:
        return self._held

    def _guard(self) -> FileLock:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        return FileLock(str(self.guard_path), timeout=self.guard_timeout)

    def _load(self) -> tuple[LockRecord | None, bool]:
        """Return (record, corrupt). A missing file is (None, False)."""
        try:
            text = self.lock_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None, False
        except OSError as e:
            log.warning("lock_record_unreadable", path=str(self.lock_path), error=str(e))
            return None, True
        try:
            return LockRecord.from_json(text), False
        except ValueError as e:
            log.warning("lock_record_corrupt", path=str(self.lock_path), error=str(e))
            return None, True

    def _write(self, record: LockRecord) -> None:
        tmp = self.lock_path.with_suffix(".tmp")
        tmp.write_text(record.to_json(), encoding="utf-8")
        tmp.replace(self.lock_path)

    def _discard(self) -> None:
        with contextlib.suppress(FileNotFoundError):
            self.lock_path.unlink()

    def read_record(self) -> LockRecord | None:
        """Return the current record, or None when absent or unreadable."""
        record, _ = self._load()
        return record

    def acquire(self) -> LockAcquisition:
        """Try to take ownership of the working directory.

        Never raises for contention; the outcome is in the returned value.
        Failing to write the record denies the lock.
        """
        if self._held:
            return LockAcquisition(granted=True, message="Lock already held by this instance")

        try:
            with self._guard():
                record, corrupt = self._load()
                if record is not None:
                    if pid_exists(record.owner_pid):
                        log.info(
                            "lock_contended",
                            owner_pid=record.owner_pid,
                            since=record.acquired_at,
                            working_dir=str(self.working_dir),
                        )
                        return LockAcquisition(
                            granted=False,
                            conflicting_owner_id=record.owner_pid,
                            message=(
                                f"Another instance is already running (PID: {record.owner_pid}, "
                                f"started at {record.acquired_at})"
                            ),
                        )
                    log.info("stale_lock_removed", owner_pid=record.owner_pid)
                    self._discard()
                elif corrupt:
                    log.info("corrupt_lock_removed", path=str(self.lock_path))
                    self._discard()

                new_record = LockRecord(
                    owner_pid=os.getpid(),
                    acquired_at=datetime.now(UTC).isoformat(),
                    working_directory=str(self.working_dir),
                )
                self._write(new_record)
        except Timeout:
            log.warning("lock_guard_timeout", guard=str(self.guard_path), timeout=self.guard_timeout)
            return LockAcquisition(granted=False, message=f"Timed out waiting for lock guard {self.guard_path}")
        except OSError as e:
            log.error("lock_write_failed", path=str(self.lock_path), error=str(e))
            return LockAcquisition(granted=False, message=f"Failed to write lock file {self.lock_path}: {e}")

        self._held = True
        log.info("lock_acquired", pid=new_record.owner_pid, working_dir=str(self.working_dir))
        return LockAcquisition(granted=True, message=f"Lock acquired (PID: {new_record.owner_pid})")

    def release(self) -> None:
        """Release the lock. Safe to call any number of times.

        The record is removed only when it still names this process.
        """
        if not self._held:
            return
        self._held = False
        try:
            with self._guard():
                record, _ = self._load()
                if record is not None and record.owner_pid == os.getpid():
                    self._discard()
                    log.info("lock_released", pid=record.owner_pid)
                else:
                    log.warning("lock_release_skipped", recorded_pid=record.owner_pid if record else None)
        except (Timeout, OSError) as e:
            log.error("lock_release_failed", path=str(self.lock_path), error=str(e))

    def holder(self) -> LockRecord | None:
        """Return the record of a live owner, or None when the lock is free."""
        record = self.read_record()
        if record is not None and pid_exists(record.owner_pid):
            return record
        return None

    def clear(self, force: bool = False) -> bool:
        """Remove a stale or corrupt record (any record when ``force``).

        Returns:
            True when a record was removed
        """
        try:
            with self._guard():
                record, corrupt = self._load()
                if record is None and not corrupt:
                    return False
                if record is not None and pid_exists(record.owner_pid) and not force:
                    return False
                self._discard()
        except (Timeout, OSError) as e:
            raise PersistenceError(f"Could not clear lock file {self.lock_path}: {e}") from e
        log.info("lock_cleared", forced=force, owner_pid=record.owner_pid if record else None)
        return True

    def _enter(self) -> "ProcessLock":
        result = self.acquire()
        if not result.granted:
            raise LockContentionError(result.message, owner_pid=result.conflicting_owner_id)
        return self

    def __enter__(self) -> "ProcessLock":
        return self._enter()

    def __exit__(self, *args: object) -> None:
        self.release()

    async def __aenter__(self) -> "ProcessLock":
        return await asyncio.to_thread(self._enter)

    async def __aexit__(self, *args: object) -> None:
        await asyncio.to_thread(self.release)
