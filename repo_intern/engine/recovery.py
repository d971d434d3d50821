"""Recovery-driven commit and push.

A commit or push rejected by a quality gate (pre-commit/pre-push hooks, lint,
tests) is handed to the agent for correction and retried, up to a fixed number
of underlying operations. Diverged history and other failures a retry cannot
fix are reported immediately without involving the agent.

The retry loop is an explicit state machine::

    IDLE --start--> ATTEMPTING
    ATTEMPTING --succeeded--> SUCCESS
    ATTEMPTING --rejected--> GATE_REJECTED
    ATTEMPTING --unrecoverable--> NON_RECOVERABLE
    GATE_REJECTED --correct--> CORRECTING
    GATE_REJECTED --budget_exhausted--> EXHAUSTED_RETRIES
    CORRECTING --retry--> ATTEMPTING
    CORRECTING --completed--> SUCCESS

The agent's own exit status is never trusted: a commit correction counts only
when the tree is clean afterwards, a push correction only when
``git push --dry-run`` succeeds.

Example:
    >>> engine = RecoveryEngine(worktree, agent=agent, hook_log_path=out / "git-hook-errors.log")
    >>> outcome = await engine.attempt_with_recovery(GitOperation.COMMIT, max_attempts=3, message="feat: x")
    >>> outcome.raise_for_failure()
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import aiofiles
import structlog

from repo_intern.engine.prompts import build_hook_fix_prompt
from repo_intern.enums import GitOperation
from repo_intern.exceptions import GateRejectionError, NonRecoverableGitError
from repo_intern.git.commands import CommandResult, GitRunner
from repo_intern.models.domain import RetryAttempt
from repo_intern.providers.base import AgentProvider

log = structlog.get_logger(__name__)


class RecoveryState(str, Enum):
    """States of the commit/push recovery loop."""

    IDLE = "idle"
    ATTEMPTING = "attempting"
    GATE_REJECTED = "gate_rejected"
    CORRECTING = "correcting"
    SUCCESS = "success"
    EXHAUSTED_RETRIES = "exhausted_retries"
    NON_RECOVERABLE = "non_recoverable"

    @property
    def is_terminal(self) -> bool:
        return self in (RecoveryState.SUCCESS, RecoveryState.EXHAUSTED_RETRIES, RecoveryState.NON_RECOVERABLE)


class RecoveryEvent(str, Enum):
    """Inputs that drive the recovery state machine."""

    START = "start"
    SUCCEEDED = "succeeded"
    REJECTED = "rejected"
    UNRECOVERABLE = "unrecoverable"
    CORRECT = "correct"
    BUDGET_EXHAUSTED = "budget_exhausted"
    RETRY = "retry"
    COMPLETED = "completed"


_TRANSITIONS: dict[tuple[RecoveryState, RecoveryEvent], RecoveryState] = {
    (RecoveryState.IDLE, RecoveryEvent.START): RecoveryState.ATTEMPTING,
    (RecoveryState.ATTEMPTING, RecoveryEvent.SUCCEEDED): RecoveryState.SUCCESS,
    (RecoveryState.ATTEMPTING, RecoveryEvent.REJECTED): RecoveryState.GATE_REJECTED,
    (RecoveryState.ATTEMPTING, RecoveryEvent.UNRECOVERABLE): RecoveryState.NON_RECOVERABLE,
    (RecoveryState.GATE_REJECTED, RecoveryEvent.CORRECT): RecoveryState.CORRECTING,
    (RecoveryState.GATE_REJECTED, RecoveryEvent.BUDGET_EXHAUSTED): RecoveryState.EXHAUSTED_RETRIES,
    (RecoveryState.CORRECTING, RecoveryEvent.RETRY): RecoveryState.ATTEMPTING,
    (RecoveryState.CORRECTING, RecoveryEvent.COMPLETED): RecoveryState.SUCCESS,
}


def transition(state: RecoveryState, event: RecoveryEvent) -> RecoveryState:
    """Next state for ``event`` in ``state``.

    Raises:
        ValueError: The event is not valid in this state (terminal states
            accept nothing)
    """
    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        raise ValueError(f"Invalid recovery transition: {state.value} --{event.value}-->") from None


class FailureClass(str, Enum):
    """Classification of a failed commit or push."""

    GATE_REJECTED = "gate_rejected"
    NON_RECOVERABLE = "non_recoverable"
    NOTHING_TO_COMMIT = "nothing_to_commit"

    @property
    def recoverable(self) -> bool:
        return self == FailureClass.GATE_REJECTED


NON_RECOVERABLE_MARKERS = (
    "non-fast-forward",
    "fetch first",
    "[rejected]",
    "updates were rejected",
)

GATE_MARKERS = (
    "hook",
    "husky",
    "pre-commit",
    "pre-push",
    "lint",
    "test failed",
    "tests failed",
    "failing test",
    "prettier",
    "eslint",
    "ruff",
    "mypy",
    "type error",
)

NOTHING_TO_COMMIT_MARKERS = (
    "nothing to commit",
    "no changes added to commit",
)


def classify_failure(result: CommandResult) -> FailureClass:
    """Classify a failed git result.

    Diverged history is checked first so that a hook mention inside a
    rejected push never triggers correction. Anything unrecognized is
    non-recoverable.
    """
    text = result.output.lower()
    if any(marker in text for marker in NOTHING_TO_COMMIT_MARKERS):
        return FailureClass.NOTHING_TO_COMMIT
    if any(marker in text for marker in NON_RECOVERABLE_MARKERS):
        return FailureClass.NON_RECOVERABLE
    if any(marker in text for marker in GATE_MARKERS):
        return FailureClass.GATE_REJECTED
    return FailureClass.NON_RECOVERABLE


class CorrectionResult(str, Enum):
    """What verification found after a correction step."""

    COMPLETED = "completed"
    READY = "ready"
    FAILED = "failed"


@dataclass
class RecoveryOutcome:
    """Result of :meth:`RecoveryEngine.attempt_with_recovery`."""

    operation: GitOperation
    success: bool
    final_state: RecoveryState
    final_detail: str
    attempts: int
    failure: FailureClass | None = None
    history: list[RetryAttempt] = field(default_factory=list)

    def raise_for_failure(self) -> None:
        """Raise the taxonomy error matching a failed outcome."""
        if self.success:
            return
        if self.final_state == RecoveryState.EXHAUSTED_RETRIES:
            raise GateRejectionError(
                f"git {self.operation.value} still rejected by quality gates after {self.attempts} attempt(s)",
                operation=self.operation.value,
                attempts=self.attempts,
            )
        if self.failure == FailureClass.NOTHING_TO_COMMIT:
            message = "Nothing to commit: the working tree has no changes"
        elif self.operation == GitOperation.PUSH:
            message = (
                "Push rejected because the remote branch has diverged; "
                "fetch and integrate the remote changes, then push again"
            )
        else:
            message = f"git {self.operation.value} failed and cannot be retried automatically"
        raise NonRecoverableGitError(message, operation=self.operation.value, detail=self.final_detail)


class RecoveryEngine:
    """Runs commit/push with bounded, agent-assisted recovery in one checkout.

    Args:
        cwd: Checkout the operations run in
        agent: Corrective agent; without one, gate rejections are not corrected
        git: Git runner (injectable for tests)
        remote: Remote pushed to
        hook_log_path: File that receives one entry per attempt
    """

    def __init__(
        self,
        cwd: Path | str,
        agent: AgentProvider | None = None,
        git: GitRunner | None = None,
        remote: str = "origin",
        hook_log_path: Path | str | None = None,
    ) -> None:
        self.cwd = Path(cwd)
        self.agent = agent
        self.git = git or GitRunner()
        self.remote = remote
        self.hook_log_path = Path(hook_log_path) if hook_log_path else None

    async def attempt_with_recovery(
        self,
        operation: GitOperation,
        max_attempts: int = 3,
        message: str | None = None,
    ) -> RecoveryOutcome:
        """Run ``operation`` until it succeeds, fails hard, or the budget runs out.

        At most ``max_attempts`` underlying commit/push operations are executed.

        Args:
            operation: COMMIT or PUSH
            max_attempts: Upper bound on underlying operations (>= 1)
            message: Commit message (required for COMMIT)
        """
        if operation == GitOperation.COMMIT and not message:
            raise ValueError("A commit message is required for commit recovery")
        max_attempts = max(1, max_attempts)

        state = transition(RecoveryState.IDLE, RecoveryEvent.START)
        attempts = 0
        detail = ""
        failure: FailureClass | None = None
        history: list[RetryAttempt] = []

        while not state.is_terminal:
            if state == RecoveryState.ATTEMPTING:
                attempts += 1
                result = await self._run(operation, message)
                if result.ok:
                    detail = result.output
                    state = transition(state, RecoveryEvent.SUCCEEDED)
                    log.info("git_operation_succeeded", operation=operation.value, attempt=attempts)
                    continue

                detail = result.output
                failure = classify_failure(result)
                log.warning(
                    "git_operation_failed",
                    operation=operation.value,
                    attempt=attempts,
                    max_attempts=max_attempts,
                    failure=failure.value,
                    exit_code=result.exit_code,
                )
                if failure.recoverable:
                    state = transition(state, RecoveryEvent.REJECTED)
                else:
                    state = transition(state, RecoveryEvent.UNRECOVERABLE)
                    await self._record(
                        history, RetryAttempt(operation, attempts, max_attempts, last_failure_detail=detail)
                    )

            elif state == RecoveryState.GATE_REJECTED:
                if attempts >= max_attempts or self.agent is None:
                    state = transition(state, RecoveryEvent.BUDGET_EXHAUSTED)
                    await self._record(
                        history, RetryAttempt(operation, attempts, max_attempts, last_failure_detail=detail)
                    )
                else:
                    state = transition(state, RecoveryEvent.CORRECT)

            elif state == RecoveryState.CORRECTING:
                correction = await self._correct(operation, detail, message)
                await self._record(
                    history,
                    RetryAttempt(
                        operation,
                        attempts,
                        max_attempts,
                        last_failure_detail=detail,
                        recovered=correction != CorrectionResult.FAILED,
                    ),
                )
                if correction == CorrectionResult.COMPLETED:
                    failure = None
                    state = transition(state, RecoveryEvent.COMPLETED)
                else:
                    state = transition(state, RecoveryEvent.RETRY)

        success = state == RecoveryState.SUCCESS
        if success:
            failure = None
        log.info(
            "recovery_finished",
            operation=operation.value,
            final_state=state.value,
            attempts=attempts,
            success=success,
        )
        return RecoveryOutcome(
            operation=operation,
            success=success,
            final_state=state,
            final_detail=detail,
            attempts=attempts,
            failure=failure,
            history=history,
        )

    async def _run(self, operation: GitOperation, message: str | None) -> CommandResult:
        if operation == GitOperation.COMMIT:
            staged = await self.git.run("add", "-A", cwd=self.cwd)
            if not staged.ok:
                return staged
            return await self.git.run("commit", "-m", message or "", cwd=self.cwd)
        return await self.git.run("push", "--set-upstream", self.remote, "HEAD", cwd=self.cwd)

    async def _correct(self, operation: GitOperation, detail: str, message: str | None) -> CorrectionResult:
        """Ask the agent to fix the rejection, then verify independently."""
        assert self.agent is not None
        prompt = build_hook_fix_prompt(
            operation, detail, str(self.hook_log_path) if self.hook_log_path else None
        )
        log.info("requesting_hook_fix", operation=operation.value)
        response = await self.agent.execute_prompt(prompt, cwd=self.cwd, task_id=f"hook-fix-{operation.value}")
        if not response.get("success"):
            log.warning("hook_fix_agent_failed", operation=operation.value, error=response.get("error"))

        if operation == GitOperation.COMMIT:
            return await self._verify_commit(message)
        return await self._verify_push()

    async def _verify_commit(self, message: str | None) -> CorrectionResult:
        if await self.git.is_clean(self.cwd):
            log.info("hook_fix_verified", operation="commit")
            return CorrectionResult.COMPLETED

        log.info("hook_fix_fallback_commit")
        staged = await self.git.run("add", ".", cwd=self.cwd)
        if not staged.ok:
            log.warning("fallback_stage_failed", error=staged.stderr.strip()[:300])
            return CorrectionResult.FAILED
        committed = await self.git.run("commit", "--no-verify", "-m", message or "", cwd=self.cwd)
        if committed.ok:
            log.info("fallback_commit_succeeded")
            return CorrectionResult.COMPLETED
        log.warning("fallback_commit_failed", error=committed.output[:300])
        return CorrectionResult.FAILED

    async def _verify_push(self) -> CorrectionResult:
        dry_run = await self.git.run("push", "--dry-run", self.remote, "HEAD", cwd=self.cwd)
        if dry_run.ok:
            log.info("hook_fix_verified", operation="push")
            return CorrectionResult.READY

        if await self.git.is_clean(self.cwd):
            log.warning("push_dry_run_failed_clean_tree", error=dry_run.output[:300])
            return CorrectionResult.FAILED

        log.info("hook_fix_fallback_amend")
        staged = await self.git.run("add", ".", cwd=self.cwd)
        if not staged.ok:
            return CorrectionResult.FAILED
        amended = await self.git.run("commit", "--amend", "--no-edit", "--no-verify", cwd=self.cwd)
        if not amended.ok:
            log.warning("fallback_amend_failed", error=amended.output[:300])
            return CorrectionResult.FAILED
        retry = await self.git.run("push", "--dry-run", self.remote, "HEAD", cwd=self.cwd)
        return CorrectionResult.READY if retry.ok else CorrectionResult.FAILED

    async def _record(self, history: list[RetryAttempt], attempt: RetryAttempt) -> None:
        history.append(attempt)
        log.info(
            "git_attempt_recorded",
            operation=attempt.operation.value,
            attempt=attempt.attempt_number,
            max_attempts=attempt.max_attempts,
            recovered=attempt.recovered,
        )
        if self.hook_log_path is None:
            return
        try:
            self.hook_log_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(self.hook_log_path, "a", encoding="utf-8") as f:
                await f.write(attempt.to_log_entry())
        except OSError as e:
            log.warning("hook_log_write_failed", path=str(self.hook_log_path), error=str(e))
