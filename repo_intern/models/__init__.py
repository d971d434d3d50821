"""Data models for the workflow engine.

Key Models:
    - WorkTask: A unit of work handed to the engine
    - ReviewRequest: A human "changes requested" review on a pull request
    - QueueEvent: A durable trigger event
    - RetryAttempt: One commit/push attempt inside a recovery loop
    - ReviewFeedback / ReviewFeedbackItem: Structured review output

Example:
    >>> from repo_intern.models import ReviewFeedback
    >>> feedback = ReviewFeedback.model_validate(data)
"""

from repo_intern.models.domain import QueueEvent, RetryAttempt, ReviewRequest, WorkTask
from repo_intern.models.review import ReviewFeedback, ReviewFeedbackItem

__all__ = [
    "QueueEvent",
    "RetryAttempt",
    "ReviewRequest",
    "ReviewFeedback",
    "ReviewFeedbackItem",
    "WorkTask",
]
