"""Tests for repo_intern.engine.event_queue module."""

import asyncio
import sqlite3
from datetime import timedelta
from pathlib import Path
from unittest.mock import patch

import pytest

from repo_intern.engine.event_queue import EventQueue
from repo_intern.enums import EventStatus
from repo_intern.exceptions import PersistenceError


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "state" / "queue.db"


class TestSchema:
    @pytest.mark.asyncio
    async def test_initialize_creates_table_and_index(self, db_path: Path):
        """Should create webhook_events and its status index."""
        async with EventQueue(db_path):
            pass

        with sqlite3.connect(db_path) as conn:
            tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
            indexes = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='index'")}

        assert "webhook_events" in tables
        assert "idx_webhook_events_status" in indexes

    @pytest.mark.asyncio
    async def test_unopenable_database_raises_persistence_error(self, tmp_path: Path):
        blocker = tmp_path / "blocker"
        blocker.write_text("a file, not a directory")

        with pytest.raises(PersistenceError):
            await EventQueue(blocker / "queue.db").initialize()


class TestEnqueueAndClaim:
    @pytest.mark.asyncio
    async def test_enqueue_creates_pending_event(self, db_path: Path):
        async with EventQueue(db_path) as queue:
            event_id = await queue.enqueue("pull_request_review", {"pr": 1})
            event = await queue.get_event(event_id)

        assert event.status == EventStatus.PENDING
        assert event.payload == {"pr": 1}
        assert event.attempts == 0
        assert event.last_error is None

    @pytest.mark.asyncio
    async def test_claim_order_follows_enqueue_order(self, db_path: Path):
        """Should claim events strictly in the order they were enqueued."""
        async with EventQueue(db_path) as queue:
            ids = [await queue.enqueue("pull_request_review", {"n": n}) for n in range(5)]

            claimed = []
            while (event := await queue.claim_next()) is not None:
                claimed.append(event.id)

        assert claimed == ids

    @pytest.mark.asyncio
    async def test_claim_marks_processing_and_counts_attempt(self, db_path: Path):
        async with EventQueue(db_path) as queue:
            event_id = await queue.enqueue("ping", {})
            event = await queue.claim_next()

        assert event.id == event_id
        assert event.status == EventStatus.PROCESSING
        assert event.attempts == 1

    @pytest.mark.asyncio
    async def test_claim_on_empty_queue(self, db_path: Path):
        async with EventQueue(db_path) as queue:
            assert await queue.claim_next() is None

    @pytest.mark.asyncio
    async def test_concurrent_claims_never_share_an_event(self, db_path: Path):
        async with EventQueue(db_path) as queue:
            for n in range(10):
                await queue.enqueue("pull_request_review", {"n": n})

            results = await asyncio.gather(*(queue.claim_next() for _ in range(15)))

        claimed = [event.id for event in results if event is not None]
        assert len(claimed) == 10
        assert len(set(claimed)) == 10

    @pytest.mark.asyncio
    async def test_unserializable_payload(self, db_path: Path):
        async with EventQueue(db_path) as queue:
            with pytest.raises(PersistenceError):
                await queue.enqueue("ping", {"bad": object()})


class TestCompleteAndFail:
    @pytest.mark.asyncio
    async def test_completed_event_is_never_claimed_again(self, db_path: Path):
        """Should delete completed events so they are processed exactly once."""
        async with EventQueue(db_path) as queue:
            event_id = await queue.enqueue("pull_request_review", {})
            event = await queue.claim_next()
            await queue.complete(event.id)

            assert await queue.get_event(event_id) is None
            assert await queue.claim_next() is None
            assert await queue.list_pending() == []

    @pytest.mark.asyncio
    async def test_fail_below_ceiling_returns_to_pending(self, db_path: Path):
        async with EventQueue(db_path, max_retries=3) as queue:
            event_id = await queue.enqueue("pull_request_review", {})
            await queue.claim_next()

            status = await queue.fail(event_id, "agent crashed")
            event = await queue.get_event(event_id)

        assert status == EventStatus.PENDING
        assert event.status == EventStatus.PENDING
        assert event.last_error == "agent crashed"

    @pytest.mark.asyncio
    async def test_retry_ceiling_marks_failed(self, db_path: Path):
        """Should mark the event failed once attempts reach max_retries."""
        async with EventQueue(db_path, max_retries=3) as queue:
            event_id = await queue.enqueue("pull_request_review", {})
            statuses = []
            for _ in range(3):
                event = await queue.claim_next()
                assert event is not None
                statuses.append(await queue.fail(event.id, "still broken"))

            assert statuses == [EventStatus.PENDING, EventStatus.PENDING, EventStatus.FAILED]
            assert await queue.claim_next() is None
            failed = await queue.list_failed()

        assert [event.id for event in failed] == [event_id]
        assert failed[0].attempts == 3

    @pytest.mark.asyncio
    async def test_fail_unknown_event(self, db_path: Path):
        async with EventQueue(db_path) as queue:
            assert await queue.fail("missing", "error") is None

    @pytest.mark.asyncio
    async def test_release_does_not_count_the_claim(self, db_path: Path):
        """Should let an event be released any number of times without failing it."""
        async with EventQueue(db_path, max_retries=2) as queue:
            event_id = await queue.enqueue("pull_request_review", {})
            for _ in range(5):
                event = await queue.claim_next()
                assert event is not None
                assert await queue.release(event.id, "lock held")

            event = await queue.get_event(event_id)

        assert event.status == EventStatus.PENDING
        assert event.attempts == 0
        assert event.last_error == "lock held"

    @pytest.mark.asyncio
    async def test_release_keeps_earlier_attempts(self, db_path: Path):
        async with EventQueue(db_path, max_retries=3) as queue:
            event_id = await queue.enqueue("pull_request_review", {})
            await queue.claim_next()
            await queue.fail(event_id, "agent crashed")
            await queue.claim_next()
            await queue.release(event_id)

            event = await queue.get_event(event_id)

        assert event.attempts == 1
        assert event.last_error is None

    @pytest.mark.asyncio
    async def test_release_ignores_events_not_in_processing(self, db_path: Path):
        async with EventQueue(db_path) as queue:
            event_id = await queue.enqueue("pull_request_review", {})

            assert await queue.release(event_id) is False
            assert await queue.release("missing") is False
            event = await queue.get_event(event_id)

        assert event.attempts == 0


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_list_pending_includes_processing(self, db_path: Path):
        async with EventQueue(db_path) as queue:
            first = await queue.enqueue("pull_request_review", {})
            second = await queue.enqueue("pull_request_review", {})
            await queue.claim_next()

            pending = await queue.list_pending()

        assert [(e.id, e.status) for e in pending] == [
            (first, EventStatus.PROCESSING),
            (second, EventStatus.PENDING),
        ]

    @pytest.mark.asyncio
    async def test_recover_abandoned_after_restart(self, db_path: Path):
        """Should return events left in processing by a crash to pending."""
        async with EventQueue(db_path) as queue:
            event_id = await queue.enqueue("pull_request_review", {})
            await queue.claim_next()

        async with EventQueue(db_path) as restarted:
            assert await restarted.recover_abandoned() == 1
            event = await restarted.claim_next()

        assert event.id == event_id
        assert event.attempts == 2

    @pytest.mark.asyncio
    async def test_reset_event_clears_attempts(self, db_path: Path):
        async with EventQueue(db_path, max_retries=1) as queue:
            event_id = await queue.enqueue("pull_request_review", {})
            await queue.claim_next()
            await queue.fail(event_id, "boom")

            assert await queue.reset_event(event_id) is True
            event = await queue.get_event(event_id)

            assert await queue.reset_event("missing") is False

        assert event.status == EventStatus.PENDING
        assert event.attempts == 0
        assert event.last_error is None

    @pytest.mark.asyncio
    async def test_stats_counts_each_status(self, db_path: Path):
        async with EventQueue(db_path, max_retries=1) as queue:
            await queue.enqueue("a", {})
            await queue.enqueue("b", {})
            await queue.enqueue("c", {})
            failed = await queue.claim_next()
            await queue.fail(failed.id, "boom")
            await queue.claim_next()

            stats = await queue.stats()

        assert stats == {"pending": 1, "processing": 1, "failed": 1}

    @pytest.mark.asyncio
    async def test_cleanup_removes_only_old_failed_events(self, db_path: Path):
        async with EventQueue(db_path, max_retries=1) as queue:
            with patch("repo_intern.engine.event_queue._now_ms", return_value=1_000):
                old = await queue.enqueue("a", {})
                await queue.claim_next()
                await queue.fail(old, "boom")
            recent = await queue.enqueue("b", {})
            await queue.claim_next()
            await queue.fail(recent, "boom")
            pending = await queue.enqueue("c", {})

            removed = await queue.cleanup(timedelta(days=1))

            assert removed == 1
            assert await queue.get_event(old) is None
            assert await queue.get_event(recent) is not None
            assert await queue.get_event(pending) is not None

    @pytest.mark.asyncio
    async def test_to_dict(self, db_path: Path):
        async with EventQueue(db_path) as queue:
            event_id = await queue.enqueue("ping", {"zen": "hi"})
            data = (await queue.get_event(event_id)).to_dict()

        assert data["id"] == event_id
        assert data["status"] == "pending"
        assert data["event_type"] == "ping"
