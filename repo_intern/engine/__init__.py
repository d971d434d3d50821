"""Workflow engine.

Key Components:
    - ProcessLock: Single-instance mutex over a working directory
    - WorktreeManager: The one managed worktree, switched between branches
    - RecoveryEngine: Commit/push with agent-driven recovery from hook rejections
    - ReviewLoop: Iterative self-review and fix cycles
    - EventQueue: Durable SQLite queue for webhook events
    - WorkflowRunner: End-to-end task and review-response workflows

Example:
    >>> from repo_intern.engine import ProcessLock, WorkflowRunner
    >>> async with ProcessLock(repo_root):
    ...     result = await WorkflowRunner(settings, repo_root).run_task(task)
"""

from repo_intern.engine.event_queue import EventQueue
from repo_intern.engine.process_lock import ProcessLock
from repo_intern.engine.recovery import RecoveryEngine, RecoveryOutcome, RecoveryState
from repo_intern.engine.review_loop import ReviewLoop, ReviewLoopResult
from repo_intern.engine.workflow import WorkflowResult, WorkflowRunner
from repo_intern.engine.worktree import WorktreeManager

__all__ = [
    "EventQueue",
    "ProcessLock",
    "RecoveryEngine",
    "RecoveryOutcome",
    "RecoveryState",
    "ReviewLoop",
    "ReviewLoopResult",
    "WorkflowResult",
    "WorkflowRunner",
    "WorktreeManager",
]
