"""GitHub webhook verification and review-event classification.

Pure functions used by the webhook server: signature checks, supported event
types, bot-mention detection, deciding whether a review should trigger work,
and converting a review payload into a :class:`ReviewRequest`.
"""

import hashlib
import hmac
import re
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from repo_intern.models.domain import ReviewRequest

log = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Hub-Signature-256"
EVENT_HEADER = "X-GitHub-Event"
DELIVERY_HEADER = "X-GitHub-Delivery"

REVIEW_EVENT = "pull_request_review"
REVIEW_COMMENT_EVENT = "pull_request_review_comment"
PING_EVENT = "ping"
SUPPORTED_EVENTS = frozenset({REVIEW_EVENT, REVIEW_COMMENT_EVENT, PING_EVENT})


@dataclass(frozen=True)
class SignatureCheck:
    valid: bool
    error: str | None = None


def verify_signature(payload: bytes, signature: str | None, secret: str) -> SignatureCheck:
    """Verify an ``X-Hub-Signature-256`` header against the raw request body."""
    if not signature:
        return SignatureCheck(False, f"Missing {SIGNATURE_HEADER} header")
    if not signature.startswith("sha256="):
        return SignatureCheck(False, "Invalid signature format (expected sha256=...)")

    expected = "sha256=" + hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    if len(signature) != len(expected):
        return SignatureCheck(False, "Signature length mismatch")
    if not hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8")):
        return SignatureCheck(False, "Signature mismatch")
    return SignatureCheck(True)


def parse_event_type(header: str | None) -> str | None:
    """Return the event name when it is one we handle, otherwise None."""
    if header and header in SUPPORTED_EVENTS:
        return header
    return None


def contains_bot_mention(text: str | None, bot_name: str | None) -> bool:
    """Case-insensitive ``@bot_name`` match on a word boundary."""
    if not text or not bot_name:
        return False
    return re.search(rf"@{re.escape(bot_name)}\b", text, re.IGNORECASE) is not None


def review_mentions_bot(
    payload: dict[str, Any],
    bot_name: str | None,
    comments: Sequence[dict[str, Any]] = (),
) -> bool:
    if not bot_name:
        return False
    if contains_bot_mention((payload.get("review") or {}).get("body"), bot_name):
        return True
    return any(contains_bot_mention(comment.get("body"), bot_name) for comment in comments)


def should_process_review(
    payload: dict[str, Any],
    require_bot_mention: bool = False,
    bot_name: str | None = None,
    comments: Sequence[dict[str, Any]] = (),
) -> tuple[bool, str]:
    """Decide whether a ``pull_request_review`` event should trigger work.

    Returns:
        (process, reason) where reason explains a skip
    """
    review = payload.get("review") or {}
    pull_request = payload.get("pull_request") or {}

    if str(review.get("state", "")).lower() != "changes_requested":
        return False, f"review state is {review.get('state')!r}, not changes_requested"
    if (review.get("user") or {}).get("type") == "Bot":
        return False, "review was submitted by a bot"
    if pull_request.get("state") != "open":
        return False, "pull request is not open"
    if require_bot_mention and not review_mentions_bot(payload, bot_name, comments):
        return False, "review does not mention the bot"
    return True, "changes requested"


def build_review_request(payload: dict[str, Any]) -> ReviewRequest:
    """Convert a ``pull_request_review`` payload into a :class:`ReviewRequest`.

    Raises:
        ValueError: Required fields are missing
    """
    review = payload.get("review") or {}
    pull_request = payload.get("pull_request") or {}
    head = pull_request.get("head") or {}
    base = pull_request.get("base") or {}

    number = pull_request.get("number")
    head_ref = head.get("ref")
    if number is None or not head_ref:
        raise ValueError("pull_request.number and pull_request.head.ref are required")

    comments = [
        {"path": c.get("path"), "line": c.get("line") or c.get("original_line"), "body": c.get("body", "")}
        for c in payload.get("comments") or []
    ]
    return ReviewRequest(
        repository=(payload.get("repository") or {}).get("full_name", ""),
        pr_number=int(number),
        head_branch=head_ref,
        base_branch=base.get("ref") or "main",
        reviewer=(review.get("user") or {}).get("login", "unknown"),
        review_body=review.get("body") or "",
        review_id=review.get("id"),
        comments=comments,
    )


class RateLimiter:
    """In-memory sliding-window limiter keyed by client address."""

    def __init__(
        self,
        max_requests: int = 30,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._requests: dict[str, list[float]] = {}
        self._last_sweep = clock()

    @property
    def tracked_clients(self) -> int:
        return len(self._requests)

    def _recent(self, client: str, now: float) -> list[float]:
        window_start = now - self.window_seconds
        return [t for t in self._requests.get(client, []) if t > window_start]

    def is_allowed(self, client: str) -> bool:
        """Record a request and report whether it is within the limit.

        Idle clients are swept at most once per window, so the table only
        holds clients seen recently even if ``cleanup`` is never scheduled.
        """
        now = self._clock()
        if now - self._last_sweep >= self.window_seconds:
            self.cleanup()
        recent = self._recent(client, now)
        if len(recent) >= self.max_requests:
            self._requests[client] = recent
            return False
        recent.append(now)
        self._requests[client] = recent
        return True

    def remaining(self, client: str) -> int:
        return max(0, self.max_requests - len(self._recent(client, self._clock())))

    def cleanup(self) -> int:
        """Forget clients with no requests inside the window.

        Returns:
            Number of clients dropped
        """
        now = self._clock()
        self._last_sweep = now
        dropped = 0
        for client in list(self._requests):
            recent = self._recent(client, now)
            if recent:
                self._requests[client] = recent
            else:
                del self._requests[client]
                dropped += 1
        return dropped
