"""Structured review feedback models.

The review loop asks the agent for feedback constrained to this schema and
validates the response strictly. Anything that does not validate is treated as
a malformed response, never coerced into an empty review.

Example:
    Building feedback by hand::

        feedback = ReviewFeedback(
            summary="Solid change, one missing bounds check.",
            items=[
                ReviewFeedbackItem(
                    priority=ReviewPriority.HIGH,
                    category="bug",
                    file="src/limiter.py",
                    line="42",
                    issue="Window size of 0 divides by zero",
                    suggestion="Reject window <= 0 in the constructor",
                )
            ],
            approved=False,
        )
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictBool, field_validator

from repo_intern.enums import ReviewPriority

REVIEW_CATEGORIES = (
    "code-quality",
    "bug",
    "performance",
    "security",
    "testing",
    "documentation",
    "style",
)


class ReviewFeedbackItem(BaseModel):
    """A single actionable (or informational) review finding."""

    model_config = ConfigDict(extra="ignore")

    priority: ReviewPriority = Field(..., description="Severity of the finding")
    category: str = Field(..., min_length=1, description="Finding category, e.g. bug or security")
    file: str | None = Field(default=None, description="Path relative to the repository root")
    line: str | None = Field(default=None, description='Line or range, e.g. "42" or "42-45"')
    issue: str = Field(..., min_length=1, description="What is wrong")
    suggestion: str = Field(default="", description="Concrete fix or improvement")

    @field_validator("priority", mode="before")
    @classmethod
    def normalize_priority(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("line", mode="before")
    @classmethod
    def coerce_line(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    def location(self) -> str:
        """Human-readable location such as ``src/app.py:42``."""
        if not self.file:
            return ""
        return f"{self.file}:{self.line}" if self.line else self.file


class ReviewFeedback(BaseModel):
    """A complete structured review of a change-set."""

    model_config = ConfigDict(extra="ignore")

    summary: str = Field(..., min_length=1, description="Overall assessment")
    items: list[ReviewFeedbackItem] = Field(..., description="Individual findings")
    approved: StrictBool = Field(..., description="Reviewer's own verdict; re-checked by the loop")

    def at_or_above(self, threshold: ReviewPriority) -> list[ReviewFeedbackItem]:
        """Items whose priority is at or above ``threshold``."""
        return [item for item in self.items if item.priority.at_least(threshold)]

    def priority_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for item in self.items:
            counts[item.priority.value] = counts.get(item.priority.value, 0) + 1
        return counts
