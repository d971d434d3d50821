"""Tests for repo_intern/webhook_server.py."""

import asyncio
import hashlib
import hmac
import json
import time
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Skip if fastapi not available
pytest.importorskip("fastapi")

from fastapi.testclient import TestClient

from repo_intern.config.settings import InternSettings
from repo_intern.engine.event_queue import EventQueue
from repo_intern.engine.process_lock import ProcessLock
from repo_intern.engine.workflow import WorkflowResult, WorkflowRunner
from repo_intern.enums import EventStatus
from repo_intern.exceptions import WorkflowError
from repo_intern.models.domain import ReviewRequest
from repo_intern.webhook_server import QueueConsumer, create_app

SECRET = "topsecret"


def review_payload(state: str = "changes_requested") -> dict:
    return {
        "action": "submitted",
        "review": {"id": 9, "state": state, "body": "Rename x", "user": {"login": "bob", "type": "User"}},
        "pull_request": {"number": 4, "state": "open", "head": {"ref": "feature/a"}, "base": {"ref": "main"}},
        "repository": {"full_name": "acme/widgets"},
    }


def make_settings(tmp_path: Path, **webhook) -> InternSettings:
    return InternSettings(
        webhook={"secret": SECRET, **webhook},
        queue={"db_path": str(tmp_path / "queue.db"), "max_retries": 2},
        worktree={"install_dependencies": False},
    )


def make_runner() -> MagicMock:
    runner = MagicMock(spec=WorkflowRunner)
    runner.address_review = AsyncMock(
        return_value=WorkflowResult(key="k", branch="feature/a", worktree_path=Path("."), output_dir=Path("."))
    )
    return runner


def post(client: TestClient, event: str, payload: dict, secret: str | None = SECRET, **headers):
    body = json.dumps(payload).encode()
    request_headers = {"X-GitHub-Event": event, "Content-Type": "application/json", **headers}
    if secret is not None:
        request_headers["X-Hub-Signature-256"] = "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return client.post("/webhooks/github", content=body, headers=request_headers)


@pytest.fixture
def client(tmp_path: Path):
    app = create_app(make_settings(tmp_path), tmp_path, runner=make_runner(), start_consumer=False)
    with TestClient(app) as test_client:
        yield test_client


class TestInfoEndpoints:
    def test_root(self, client: TestClient):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["endpoints"]["webhook"] == "/webhooks/github"

    def test_health_reports_queue_stats(self, client: TestClient):
        """Should return healthy status with per-status queue counts."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["queue"] == {"pending": 0, "processing": 0, "failed": 0}
        assert data["consumer_running"] is False


class TestGithubWebhookEndpoint:
    def test_review_is_queued(self, client: TestClient):
        response = post(client, "pull_request_review", review_payload())

        assert response.status_code == 202
        assert response.json()["status"] == "queued"
        assert client.get("/health").json()["queue"]["pending"] == 1

    def test_non_actionable_review_is_skipped(self, client: TestClient):
        response = post(client, "pull_request_review", review_payload(state="commented"))

        assert response.status_code == 200
        assert response.json()["status"] == "skipped"
        assert client.get("/health").json()["queue"]["pending"] == 0

    def test_ping(self, client: TestClient):
        response = post(client, "ping", {"zen": "Keep it simple.", "hook_id": 77})

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "zen": "Keep it simple.", "hook_id": 77}

    def test_unsupported_event_is_ignored(self, client: TestClient):
        response = post(client, "push", {"ref": "refs/heads/main"})

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"

    def test_missing_signature(self, client: TestClient):
        response = post(client, "ping", {}, secret=None)

        assert response.status_code == 401

    def test_bad_signature(self, client: TestClient):
        response = post(client, "pull_request_review", review_payload(), secret="wrong")

        assert response.status_code == 401
        assert client.get("/health").json()["queue"]["pending"] == 0

    def test_missing_event_header(self, client: TestClient):
        body = b"{}"
        signature = "sha256=" + hmac.new(SECRET.encode(), body, hashlib.sha256).hexdigest()

        response = client.post("/webhooks/github", content=body, headers={"X-Hub-Signature-256": signature})

        assert response.status_code == 400

    def test_invalid_json(self, client: TestClient):
        body = b"not json"
        signature = "sha256=" + hmac.new(SECRET.encode(), body, hashlib.sha256).hexdigest()

        response = client.post(
            "/webhooks/github",
            content=body,
            headers={"X-Hub-Signature-256": signature, "X-GitHub-Event": "ping"},
        )

        assert response.status_code == 400

    def test_rate_limit(self, tmp_path: Path):
        app = create_app(
            make_settings(tmp_path, rate_limit_requests=2), tmp_path, runner=make_runner(), start_consumer=False
        )
        with TestClient(app) as test_client:
            statuses = [post(test_client, "ping", {"zen": "z"}).status_code for _ in range(3)]

        assert statuses == [200, 200, 429]

    def test_idle_rate_limit_entries_are_swept(self, tmp_path: Path):
        """Should forget spoofed forwarded addresses once their window has passed."""
        app = create_app(
            make_settings(tmp_path, rate_limit_window_seconds=0.1), tmp_path, runner=make_runner(), start_consumer=False
        )
        with TestClient(app) as test_client:
            for i in range(50):
                post(test_client, "ping", {"zen": "z"}, **{"X-Forwarded-For": f"198.51.100.{i}"})

            for _ in range(50):
                if app.state.rate_limiter.tracked_clients == 0:
                    break
                time.sleep(0.05)
            tracked = app.state.rate_limiter.tracked_clients
            sweeper = app.state.rate_limit_sweeper

        assert tracked == 0
        assert sweeper.done()

    def test_no_secret_accepts_unsigned(self, tmp_path: Path):
        settings = InternSettings(queue={"db_path": str(tmp_path / "queue.db")})
        app = create_app(settings, tmp_path, runner=make_runner(), start_consumer=False)
        with TestClient(app) as test_client:
            response = post(test_client, "ping", {"zen": "z"}, secret=None)

        assert response.status_code == 200


class TestQueueConsumer:
    @pytest.mark.asyncio
    async def test_empty_queue(self, tmp_path: Path):
        async with EventQueue(tmp_path / "q.db") as queue:
            consumer = QueueConsumer(queue, make_runner(), ProcessLock(tmp_path))

            assert await consumer.process_one() is False

    @pytest.mark.asyncio
    async def test_review_event_runs_workflow_and_completes(self, tmp_path: Path):
        runner = make_runner()
        async with EventQueue(tmp_path / "q.db") as queue:
            event_id = await queue.enqueue("pull_request_review", review_payload())
            consumer = QueueConsumer(queue, runner, ProcessLock(tmp_path))

            assert await consumer.process_one() is True

            assert await queue.get_event(event_id) is None

        request = runner.address_review.await_args.args[0]
        assert isinstance(request, ReviewRequest)
        assert request.pr_number == 4
        assert request.head_branch == "feature/a"
        assert runner.address_review.await_args.kwargs["push"] is True
        assert not ProcessLock(tmp_path).lock_path.exists()

    @pytest.mark.asyncio
    async def test_workflow_failure_is_retried_then_failed(self, tmp_path: Path):
        runner = make_runner()
        runner.address_review.side_effect = WorkflowError("agent produced nothing")
        async with EventQueue(tmp_path / "q.db", max_retries=2) as queue:
            event_id = await queue.enqueue("pull_request_review", review_payload())
            consumer = QueueConsumer(queue, runner, ProcessLock(tmp_path))

            await consumer.process_one()
            first = await queue.get_event(event_id)
            await consumer.process_one()
            second = await queue.get_event(event_id)

        assert first.status == EventStatus.PENDING
        assert first.last_error == "agent produced nothing"
        assert second.status == EventStatus.FAILED

    @pytest.mark.asyncio
    async def test_lock_contention_defers_event(self, tmp_path: Path):
        """Should not run the workflow while another process holds the lock."""
        runner = make_runner()
        async with EventQueue(tmp_path / "q.db") as queue:
            event_id = await queue.enqueue("pull_request_review", review_payload())
            consumer = QueueConsumer(queue, runner, ProcessLock(tmp_path))

            with ProcessLock(tmp_path):
                processed = await consumer.process_one()

            event = await queue.get_event(event_id)

        runner.address_review.assert_not_awaited()
        assert processed is False
        assert event.status == EventStatus.PENDING
        assert event.attempts == 0
        assert "already running" in event.last_error

    @pytest.mark.asyncio
    async def test_lock_contention_does_not_spend_retries(self, tmp_path: Path):
        """Should keep a review event queued for as long as another run holds the lock."""
        runner = make_runner()
        async with EventQueue(tmp_path / "q.db", max_retries=3) as queue:
            event_id = await queue.enqueue("pull_request_review", review_payload())
            consumer = QueueConsumer(queue, runner, ProcessLock(tmp_path), poll_interval=0.05)
            consumer.start()

            with ProcessLock(tmp_path):
                await asyncio.sleep(0.5)
                runner.address_review.assert_not_awaited()

            for _ in range(100):
                if runner.address_review.await_count:
                    break
                await asyncio.sleep(0.02)
            await consumer.stop()
            remaining = await queue.get_event(event_id)
            failed = await queue.list_failed()

        runner.address_review.assert_awaited_once()
        assert remaining is None
        assert failed == []

    @pytest.mark.asyncio
    async def test_waits_between_claims_while_lock_is_held(self, tmp_path: Path):
        runner = make_runner()
        async with EventQueue(tmp_path / "q.db", max_retries=50) as queue:
            await queue.enqueue("pull_request_review", review_payload())
            queue.claim_next = AsyncMock(wraps=queue.claim_next)
            consumer = QueueConsumer(queue, runner, ProcessLock(tmp_path), poll_interval=0.2)

            with ProcessLock(tmp_path):
                consumer.start()
                await asyncio.sleep(0.5)
                await consumer.stop()

        assert 1 <= queue.claim_next.await_count <= 4

    @pytest.mark.asyncio
    async def test_invalid_payload_fails_event(self, tmp_path: Path):
        async with EventQueue(tmp_path / "q.db", max_retries=1) as queue:
            event_id = await queue.enqueue("pull_request_review", {"review": {}})
            consumer = QueueConsumer(queue, make_runner(), ProcessLock(tmp_path))

            await consumer.process_one()
            event = await queue.get_event(event_id)

        assert event.status == EventStatus.FAILED
        assert event.last_error.startswith("Invalid payload")

    @pytest.mark.asyncio
    async def test_background_consumer_drains_queue(self, tmp_path: Path):
        runner = make_runner()
        async with EventQueue(tmp_path / "q.db") as queue:
            consumer = QueueConsumer(queue, runner, ProcessLock(tmp_path), poll_interval=0.05)
            consumer.start()
            assert consumer.running
            await queue.enqueue("pull_request_review", review_payload())
            consumer.notify()

            for _ in range(100):
                if runner.address_review.await_count:
                    break
                await asyncio.sleep(0.02)

            await consumer.stop()
            stats = await queue.stats()

        assert runner.address_review.await_count == 1
        assert not consumer.running
        assert stats["pending"] == 0
