"""
Domain models for the workflow engine.

These dataclasses are the engine's internal representation of a unit of work,
a durable queue event and a single commit/push attempt.

Example:
    Describing a unit of work::

        task = WorkTask(
            key="PROJ-123",
            summary="Add rate limiting to the login endpoint",
            prompt="Implement a sliding-window limiter ...",
            base_branch="main",
        )
"""

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from repo_intern.enums import EventStatus, GitOperation


def _from_epoch_ms(value: int | float) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=UTC)


@dataclass
class WorkTask:
    """A unit of work handed to the engine.

    Attributes:
        key: Short identifier used for branch names and artifact directories
        summary: One-line description, used in commit messages
        prompt: Full instructions given to the code-generation agent
        base_branch: Branch the feature branch is created from
    """

    key: str
    summary: str
    prompt: str
    base_branch: str = "main"
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def slug(self) -> str:
        """Filesystem- and ref-safe form of the key."""
        cleaned = "".join(c if c.isalnum() or c in "-_." else "-" for c in self.key.strip())
        return cleaned.strip("-.") or "task"


@dataclass
class ReviewRequest:
    """A human review that requested changes on a pull request branch."""

    repository: str
    pr_number: int
    head_branch: str
    base_branch: str
    reviewer: str
    review_body: str = ""
    review_id: int | None = None
    comments: list[dict[str, Any]] = field(default_factory=list)

    @property
    def key(self) -> str:
        """Artifact key, unique per review."""
        suffix = f"-{self.review_id}" if self.review_id is not None else ""
        return f"pr-{self.pr_number}-review{suffix}"


@dataclass
class QueueEvent:
    """A trigger event persisted in the durable queue.

    ``completed`` never appears on a stored row: completed events are deleted.
    """

    id: str
    event_type: str
    payload: Any
    status: EventStatus
    created_at: datetime
    updated_at: datetime
    attempts: int = 0
    last_error: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> "QueueEvent":
        """Build an event from a ``webhook_events`` row."""
        return cls(
            id=row["id"],
            event_type=row["event_type"],
            payload=json.loads(row["payload"]),
            status=EventStatus(row["status"]),
            created_at=_from_epoch_ms(row["created_at"]),
            updated_at=_from_epoch_ms(row["updated_at"]),
            attempts=row["attempts"],
            last_error=row["last_error"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "attempts": self.attempts,
            "last_error": self.last_error,
        }


@dataclass
class RetryAttempt:
    """One underlying commit or push attempt inside a recovery loop.

    Logged and appended to the hook-error log; never read back.
    """

    operation: GitOperation
    attempt_number: int
    max_attempts: int
    last_failure_detail: str = ""
    recovered: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_log_entry(self) -> str:
        """Render the attempt as a hook-error log entry."""
        status = "FIXED" if self.recovered else "FAILED"
        separator = "=" * 80
        return (
            f"{separator}\n"
            f"Timestamp: {self.timestamp.isoformat()}\n"
            f"Hook Type: {self.operation.value}\n"
            f"Attempt: {self.attempt_number}/{self.max_attempts}\n"
            f"Status: {status}\n"
            f"{separator}\n"
            f"Error Output:\n{self.last_failure_detail.rstrip()}\n\n"
        )
