"""Enumerations shared across the repo-intern engine."""

from enum import Enum


class ErrorKind(str, Enum):
    """Taxonomy tag attached to every workflow-level failure."""

    CONTENTION = "contention"
    RESOURCE_CORRUPTION = "resource_corruption"
    GATE_REJECTION = "gate_rejection"
    VCS_CONFLICT = "vcs_conflict"
    MALFORMED_RESPONSE = "malformed_response"
    PERSISTENCE = "persistence"
    WORKFLOW = "workflow"

    def __str__(self) -> str:
        return self.value


class GitOperation(str, Enum):
    """Git operations that can be wrapped in a recovery loop."""

    COMMIT = "commit"
    PUSH = "push"

    def __str__(self) -> str:
        return self.value


class ReviewPriority(str, Enum):
    """Severity of a review feedback item, highest first.

    Example:
        >>> ReviewPriority.HIGH.weight > ReviewPriority.MEDIUM.weight
        True
        >>> ReviewPriority.LOW.at_least(ReviewPriority.MEDIUM)
        False
    """

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"

    def __str__(self) -> str:
        return self.value

    @property
    def weight(self) -> int:
        """Numeric weight used for threshold comparisons (critical=5 ... info=1)."""
        return _PRIORITY_WEIGHTS[self]

    def at_least(self, threshold: "ReviewPriority") -> bool:
        """Check whether this priority is at or above ``threshold``."""
        return self.weight >= threshold.weight


_PRIORITY_WEIGHTS = {
    ReviewPriority.CRITICAL: 5,
    ReviewPriority.HIGH: 4,
    ReviewPriority.MEDIUM: 3,
    ReviewPriority.LOW: 2,
    ReviewPriority.INFO: 1,
}


class EventStatus(str, Enum):
    """Lifecycle status of a durable queue event.

    pending -> processing -> (deleted on completion)
    processing -> pending (retry) | failed (terminal)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value
