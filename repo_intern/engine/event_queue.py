"""Durable SQLite-backed queue for asynchronously arriving trigger events.

Events are persisted before they are processed and removed only after
successful completion, so a crash can never silently drop work.

Lifecycle::

    enqueue -> pending
    claim_next -> processing (attempts += 1)
    complete -> row deleted
    fail -> pending (attempts < max_retries) | failed (terminal, retained)
    release -> pending (attempts -= 1, the claim is not counted)

Example:
    >>> queue = EventQueue(".repo-intern/queue.db")
    >>> await queue.initialize()
    >>> event_id = await queue.enqueue("pull_request_review", payload)
    >>> event = await queue.claim_next()
    >>> await queue.complete(event.id)
"""

import asyncio
import json
import secrets
import time
from datetime import timedelta
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from repo_intern.enums import EventStatus
from repo_intern.exceptions import PersistenceError
from repo_intern.models.domain import QueueEvent

log = structlog.get_logger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_CLEANUP_AGE = timedelta(days=7)


def _now_ms() -> int:
    return int(time.time() * 1000)


class EventQueue:
    """Single-file SQLite event queue.

    Safe for many concurrent producers in one process; writes are serialized
    through an ``asyncio.Lock``. The queue is the sole writer of its rows.
    """

    SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS webhook_events (
        id TEXT PRIMARY KEY,
        event_type TEXT NOT NULL,
        payload TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT
    );
    CREATE INDEX IF NOT EXISTS idx_webhook_events_status ON webhook_events(status);
    """

    SELECT_COLUMNS = "id, event_type, payload, status, created_at, updated_at, attempts, last_error"

    INSERT_SQL = """
    INSERT INTO webhook_events (id, event_type, payload, status, created_at, updated_at, attempts)
    VALUES (?, ?, ?, 'pending', ?, ?, 0)
    """

    SELECT_NEXT_PENDING_SQL = f"""
    SELECT {SELECT_COLUMNS} FROM webhook_events
    WHERE status = 'pending'
    ORDER BY created_at ASC, rowid ASC
    LIMIT 1
    """

    MARK_PROCESSING_SQL = """
    UPDATE webhook_events
    SET status = 'processing', updated_at = ?, attempts = attempts + 1
    WHERE id = ? AND status = 'pending'
    """

    def __init__(self, db_path: str | Path, max_retries: int = DEFAULT_MAX_RETRIES) -> None:
        self.db_path = Path(db_path)
        self.max_retries = max_retries
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open the database and create the schema if needed."""
        if self._connection is not None:
            return
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            async with self._lock:
                self._connection = await aiosqlite.connect(self.db_path)
                self._connection.row_factory = aiosqlite.Row
                await self._connection.execute("PRAGMA journal_mode=WAL")
                await self._connection.executescript(self.SCHEMA_SQL)
                await self._connection.commit()
        except (OSError, aiosqlite.Error) as e:
            raise PersistenceError(f"Cannot open event queue at {self.db_path}: {e}") from e
        log.info("event_queue_initialized", db_path=str(self.db_path), max_retries=self.max_retries)

    async def close(self) -> None:
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def __aenter__(self) -> "EventQueue":
        await self.initialize()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    async def _get_connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            await self.initialize()
        assert self._connection is not None, "Failed to initialize connection"
        return self._connection

    def _generate_id(self) -> str:
        # Millisecond prefix keeps ids roughly sortable by arrival.
        return f"{_now_ms()}-{secrets.token_hex(5)}"

    async def _write(self, sql: str, params: tuple[Any, ...]) -> int:
        """Execute one write statement and commit; returns affected row count."""
        conn = await self._get_connection()
        try:
            async with self._lock:
                cursor = await conn.execute(sql, params)
                await conn.commit()
                return cursor.rowcount
        except aiosqlite.Error as e:
            raise PersistenceError(f"Event queue write failed: {e}") from e

    async def _fetch(self, sql: str, params: tuple[Any, ...] = ()) -> list[QueueEvent]:
        conn = await self._get_connection()
        try:
            async with conn.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise PersistenceError(f"Event queue read failed: {e}") from e
        return [QueueEvent.from_row(row) for row in rows]

    async def enqueue(self, event_type: str, payload: Any) -> str:
        """Persist a new pending event and return its id."""
        try:
            payload_json = json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Event payload is not JSON serializable: {e}") from e

        event_id = self._generate_id()
        now = _now_ms()
        await self._write(self.INSERT_SQL, (event_id, event_type, payload_json, now, now))
        log.info("event_enqueued", event_id=event_id, event_type=event_type)
        return event_id

    async def claim_next(self) -> QueueEvent | None:
        """Atomically move the oldest pending event to processing."""
        conn = await self._get_connection()
        try:
            async with self._lock:
                async with conn.execute(self.SELECT_NEXT_PENDING_SQL) as cursor:
                    row = await cursor.fetchone()
                if row is None:
                    return None
                await conn.execute(self.MARK_PROCESSING_SQL, (_now_ms(), row["id"]))
                await conn.commit()
                async with conn.execute(
                    f"SELECT {self.SELECT_COLUMNS} FROM webhook_events WHERE id = ?", (row["id"],)
                ) as cursor:
                    claimed = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise PersistenceError(f"Event queue claim failed: {e}") from e

        event = QueueEvent.from_row(claimed)
        log.info("event_claimed", event_id=event.id, event_type=event.event_type, attempts=event.attempts)
        return event

    async def complete(self, event_id: str) -> None:
        """Delete a finished event so it can never be claimed again."""
        await self._write("DELETE FROM webhook_events WHERE id = ?", (event_id,))
        log.info("event_completed", event_id=event_id)

    async def fail(self, event_id: str, error: str) -> EventStatus | None:
        """Record a processing failure.

        Returns:
            The event's new status, or None when the event does not exist
        """
        event = await self.get_event(event_id)
        if event is None:
            log.warning("fail_unknown_event", event_id=event_id)
            return None

        status = EventStatus.FAILED if event.attempts >= self.max_retries else EventStatus.PENDING
        await self._write(
            "UPDATE webhook_events SET status = ?, updated_at = ?, last_error = ? WHERE id = ?",
            (status.value, _now_ms(), error, event_id),
        )
        if status == EventStatus.FAILED:
            log.error("event_failed_permanently", event_id=event_id, attempts=event.attempts, error=error)
        else:
            log.warning(
                "event_retry_scheduled",
                event_id=event_id,
                attempts=event.attempts,
                max_retries=self.max_retries,
                error=error,
            )
        return status

    async def release(self, event_id: str, error: str | None = None) -> bool:
        """Return a claimed event to pending without counting the claim.

        Used when the event could not be started at all, e.g. another run
        holds the repository lock. The attempt budget is left untouched.
        """
        count = await self._write(
            "UPDATE webhook_events SET status = 'pending', updated_at = ?, "
            "attempts = MAX(attempts - 1, 0), last_error = ? "
            "WHERE id = ? AND status = 'processing'",
            (_now_ms(), error, event_id),
        )
        if count:
            log.info("event_released", event_id=event_id, reason=error)
        return count > 0

    async def get_event(self, event_id: str) -> QueueEvent | None:
        events = await self._fetch(f"SELECT {self.SELECT_COLUMNS} FROM webhook_events WHERE id = ?", (event_id,))
        return events[0] if events else None

    async def list_pending(self) -> list[QueueEvent]:
        """Pending and processing events, oldest first (startup resume)."""
        return await self._fetch(
            f"SELECT {self.SELECT_COLUMNS} FROM webhook_events "
            "WHERE status IN ('pending', 'processing') ORDER BY created_at ASC, rowid ASC"
        )

    async def list_failed(self) -> list[QueueEvent]:
        return await self._fetch(
            f"SELECT {self.SELECT_COLUMNS} FROM webhook_events "
            "WHERE status = 'failed' ORDER BY created_at ASC, rowid ASC"
        )

    async def recover_abandoned(self) -> int:
        """Return events left in processing by a crashed consumer to pending."""
        count = await self._write(
            "UPDATE webhook_events SET status = 'pending', updated_at = ? WHERE status = 'processing'",
            (_now_ms(),),
        )
        if count:
            log.info("abandoned_events_recovered", count=count)
        return count

    async def reset_event(self, event_id: str) -> bool:
        """Put an event back to pending with its attempt counter cleared."""
        count = await self._write(
            "UPDATE webhook_events SET status = 'pending', updated_at = ?, attempts = 0, last_error = NULL "
            "WHERE id = ?",
            (_now_ms(), event_id),
        )
        if count:
            log.info("event_reset", event_id=event_id)
        return count > 0

    async def stats(self) -> dict[str, int]:
        """Count events per stored status."""
        conn = await self._get_connection()
        try:
            async with conn.execute("SELECT status, COUNT(*) AS count FROM webhook_events GROUP BY status") as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise PersistenceError(f"Event queue read failed: {e}") from e

        result = {
            EventStatus.PENDING.value: 0,
            EventStatus.PROCESSING.value: 0,
            EventStatus.FAILED.value: 0,
        }
        for row in rows:
            if row["status"] in result:
                result[row["status"]] = row["count"]
        return result

    async def cleanup(self, max_age: timedelta = DEFAULT_CLEANUP_AGE) -> int:
        """Delete failed events not touched within ``max_age``."""
        cutoff = _now_ms() - int(max_age.total_seconds() * 1000)
        count = await self._write(
            "DELETE FROM webhook_events WHERE status = 'failed' AND updated_at < ?",
            (cutoff,),
        )
        if count:
            log.info("failed_events_cleaned", count=count)
        return count
