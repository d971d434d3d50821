"""Webhook server for GitHub pull request review events.

Requests are verified, classified and persisted in the durable event queue;
a single consumer task drains the queue in arrival order and runs the
review-response workflow for each event under the process lock. Producers
never wait on the consumer.
"""

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from repo_intern import __version__
from repo_intern.config.settings import InternSettings
from repo_intern.engine.event_queue import EventQueue
from repo_intern.engine.process_lock import ProcessLock
from repo_intern.engine.webhook_events import (
    DELIVERY_HEADER,
    EVENT_HEADER,
    PING_EVENT,
    REVIEW_EVENT,
    SIGNATURE_HEADER,
    RateLimiter,
    build_review_request,
    parse_event_type,
    should_process_review,
    verify_signature,
)
from repo_intern.engine.workflow import WorkflowRunner
from repo_intern.exceptions import LockContentionError, PersistenceError, RepoInternError
from repo_intern.models.domain import QueueEvent
from repo_intern.utils.logging_config import bind_context, clear_context

log = structlog.get_logger(__name__)

IDLE_POLL_SECONDS = 5.0


class QueueConsumer:
    """Drains the event queue one event at a time.

    Args:
        queue: Initialized event queue
        runner: Workflow runner used for review events
        lock: Process lock taken around each event
        poll_interval: Seconds to wait when the queue is empty or the lock is held
    """

    def __init__(
        self,
        queue: EventQueue,
        runner: WorkflowRunner,
        lock: ProcessLock,
        poll_interval: float = IDLE_POLL_SECONDS,
    ) -> None:
        self.queue = queue
        self.runner = runner
        self.lock = lock
        self.poll_interval = poll_interval
        self._wakeup = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def notify(self) -> None:
        """Wake the consumer after an enqueue."""
        self._wakeup.set()

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self.run(), name="repo-intern-queue-consumer")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        log.info("queue_consumer_stopped")

    async def run(self) -> None:
        log.info("queue_consumer_started")
        while True:
            try:
                processed = await self.process_one()
            except PersistenceError as e:
                log.error("queue_consumer_persistence_error", error=e.message)
                processed = False
            if processed:
                continue
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
            except TimeoutError:
                pass

    async def process_one(self) -> bool:
        """Claim and handle the next event.

        An event that cannot start because another run holds the process
        lock is released back to pending without spending an attempt.

        Returns:
            False when the queue was empty or the event was deferred, so the
            caller should wait before claiming again
        """
        try:
            event = await self.queue.claim_next()
        except PersistenceError as e:
            log.error("queue_claim_failed", error=e.message)
            return False
        if event is None:
            return False

        bind_context(event_id=event.id)
        try:
            await self._handle(event)
        except LockContentionError as e:
            await self.queue.release(event.id, e.message)
            log.info("event_deferred_lock_held", owner_pid=e.owner_pid, retry_in=self.poll_interval)
            return False
        except RepoInternError as e:
            status = await self.queue.fail(event.id, e.message)
            log.warning("event_failed", event_type=event.event_type, error=e.message, status=str(status))
        except ValueError as e:
            status = await self.queue.fail(event.id, f"Invalid payload: {e}")
            log.warning("event_payload_invalid", error=str(e), status=str(status))
        except Exception as e:
            log.error("event_processing_unexpected", error=str(e), exc_info=True)
            await self.queue.fail(event.id, f"Unexpected error: {e}")
        else:
            await self.queue.complete(event.id)
            log.info("event_handled", event_type=event.event_type, attempts=event.attempts)
        finally:
            clear_context()
        return True

    async def _handle(self, event: QueueEvent) -> None:
        if event.event_type != REVIEW_EVENT:
            log.warning("unhandled_queued_event", event_type=event.event_type)
            return
        request = build_review_request(event.payload)
        log.info("review_event_processing", pr=request.pr_number, branch=request.head_branch)
        async with self.lock:
            await self.runner.address_review(request, push=True)


async def _sweep_rate_limiter(limiter: RateLimiter) -> None:
    """Drop idle rate-limit entries once per window until cancelled."""
    while True:
        await asyncio.sleep(limiter.window_seconds)
        dropped = limiter.cleanup()
        if dropped:
            log.debug("rate_limiter_swept", dropped=dropped, tracked=limiter.tracked_clients)


def _client_address(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def create_app(
    settings: InternSettings,
    repo_root: Path | str,
    runner: WorkflowRunner | None = None,
    queue: EventQueue | None = None,
    start_consumer: bool = True,
) -> FastAPI:
    """Build the webhook application.

    Args:
        settings: Loaded configuration
        repo_root: Repository the workflows run against
        runner: Workflow runner (default: built from settings)
        queue: Event queue (default: SQLite file from settings)
        start_consumer: Start the background consumer on startup
    """
    root = Path(repo_root).resolve()
    db_path = Path(settings.queue.db_path)
    if not db_path.is_absolute():
        db_path = root / db_path

    event_queue = queue or EventQueue(db_path, max_retries=settings.queue.max_retries)
    workflow_runner = runner or WorkflowRunner(settings, root)
    consumer = QueueConsumer(event_queue, workflow_runner, ProcessLock(root, lock_dir=settings.paths.lock_dir))
    limiter = RateLimiter(
        max_requests=settings.webhook.rate_limit_requests,
        window_seconds=settings.webhook.rate_limit_window_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await event_queue.initialize()
        recovered = await event_queue.recover_abandoned()
        if not settings.webhook.secret:
            log.warning("webhook_secret_not_configured")
        if start_consumer:
            consumer.start()
        sweeper = asyncio.create_task(_sweep_rate_limiter(limiter), name="repo-intern-rate-limit-sweep")
        app.state.rate_limit_sweeper = sweeper
        log.info("webhook_server_started", repo_root=str(root), recovered=recovered)
        try:
            yield
        finally:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
            await consumer.stop()
            await event_queue.close()
            log.info("webhook_server_stopped")

    app = FastAPI(title="repo-intern webhook server", version=__version__, lifespan=lifespan)
    app.state.queue = event_queue
    app.state.consumer = consumer
    app.state.rate_limiter = limiter

    @app.post("/webhooks/github")
    async def github_webhook(request: Request) -> JSONResponse:
        """Verify, classify and enqueue a GitHub webhook delivery."""
        client = _client_address(request)
        if not limiter.is_allowed(client):
            log.warning("webhook_rate_limited", client=client)
            raise HTTPException(status_code=429, detail="Too many requests")

        body = await request.body()
        if settings.webhook.secret:
            check = verify_signature(body, request.headers.get(SIGNATURE_HEADER), settings.webhook.secret)
            if not check.valid:
                log.warning("webhook_signature_invalid", client=client, error=check.error)
                raise HTTPException(status_code=401, detail=check.error)

        raw_event = request.headers.get(EVENT_HEADER)
        if not raw_event:
            raise HTTPException(status_code=400, detail=f"Missing {EVENT_HEADER} header")
        delivery = request.headers.get(DELIVERY_HEADER)

        try:
            payload: Any = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise HTTPException(status_code=400, detail="Request body is not valid JSON") from e
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Request body must be a JSON object")

        log.info("webhook_received", event_type=raw_event, delivery=delivery)

        event_type = parse_event_type(raw_event)
        if event_type is None:
            return JSONResponse({"status": "ignored", "event_type": raw_event})

        if event_type == PING_EVENT:
            log.info("webhook_ping", hook_id=payload.get("hook_id"))
            return JSONResponse({"status": "ok", "zen": payload.get("zen"), "hook_id": payload.get("hook_id")})

        if event_type != REVIEW_EVENT:
            # Line comments arrive with their review; the review event carries them.
            return JSONResponse({"status": "ignored", "event_type": event_type})

        process, reason = should_process_review(
            payload,
            require_bot_mention=settings.webhook.require_bot_mention,
            bot_name=settings.webhook.bot_name,
        )
        if not process:
            log.info("review_skipped", reason=reason)
            return JSONResponse({"status": "skipped", "reason": reason})

        try:
            event_id = await event_queue.enqueue(event_type, payload)
        except PersistenceError as e:
            log.error("webhook_enqueue_failed", error=e.message)
            raise HTTPException(status_code=503, detail="Event queue unavailable") from e

        consumer.notify()
        return JSONResponse({"status": "queued", "event_id": event_id}, status_code=202)

    @app.get("/health")
    async def health_check() -> JSONResponse:
        """Health check endpoint with queue statistics."""
        try:
            stats = await event_queue.stats()
        except PersistenceError as e:
            return JSONResponse({"status": "degraded", "error": e.message}, status_code=503)
        return JSONResponse(
            {
                "status": "healthy",
                "service": "repo-intern-webhook",
                "queue": stats,
                "consumer_running": consumer.running,
            }
        )

    @app.get("/")
    async def root_info() -> dict[str, Any]:
        return {
            "service": "repo-intern",
            "version": __version__,
            "endpoints": {"webhook": "/webhooks/github", "health": "/health"},
        }

    return app
