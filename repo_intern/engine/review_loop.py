"""Iterative self-review loop.

Each iteration diffs the branch against its base, asks the agent for
structured feedback, keeps the items at or above a priority threshold and, if
any remain, asks the agent to fix exactly those and commits the result. The
loop converges when nothing addressable is left; the reviewer's ``approved``
flag alone never ends it.

Example:
    >>> loop = ReviewLoop(agent, worktree, base_branch="main", output_dir=out, recovery=recovery)
    >>> result = await loop.run(max_iterations=5, min_priority=ReviewPriority.MEDIUM)
    >>> result.success, result.iterations
    (True, 2)
"""

from dataclasses import dataclass, field
from pathlib import Path

import structlog

from repo_intern.engine.artifacts import ArtifactStore
from repo_intern.engine.feedback_parser import FeedbackParseResult, parse_review_feedback
from repo_intern.engine.prompts import build_fix_prompt, build_review_prompt
from repo_intern.engine.recovery import FailureClass, RecoveryEngine
from repo_intern.enums import GitOperation, ReviewPriority
from repo_intern.exceptions import GitOperationError, MalformedResponseError
from repo_intern.git.commands import GitRunner
from repo_intern.models.review import ReviewFeedback, ReviewFeedbackItem
from repo_intern.providers.base import AgentProvider

log = structlog.get_logger(__name__)

# History depths tried when a shallow clone cannot be fully unshallowed.
DEEPEN_STEPS = (50, 200, 1000, 5000)


async def compute_branch_diff(git: GitRunner, cwd: Path, base_branch: str, remote: str = "origin") -> str:
    """Diff HEAD against the merge base with ``base_branch``.

    Works in shallow clones: history is unshallowed, or deepened step by step,
    until a merge base exists. Falls back from a three-dot diff to an explicit
    merge-base diff and finally a two-dot diff.

    Raises:
        GitOperationError: The base branch is unknown or no diff could be produced
    """
    branch = base_branch.removeprefix(f"{remote}/")
    remote_base = f"{remote}/{branch}"

    fetch = await git.run("fetch", remote, f"+refs/heads/{branch}:refs/remotes/{remote}/{branch}", cwd=cwd)
    if not fetch.ok:
        log.warning("base_fetch_failed", base=remote_base, error=fetch.stderr.strip()[:300])

    shallow = await git.run("rev-parse", "--is-shallow-repository", cwd=cwd)
    if shallow.ok and shallow.stdout.strip() == "true":
        log.info("shallow_repository_detected", cwd=str(cwd))
        unshallow = await git.run("fetch", "--unshallow", remote, cwd=cwd)
        if not unshallow.ok:
            for depth in DEEPEN_STEPS:
                await git.run("fetch", f"--deepen={depth}", remote, cwd=cwd)
                if (await git.run("merge-base", "HEAD", remote_base, cwd=cwd)).ok:
                    log.info("history_deepened", depth=depth)
                    break

    if not (await git.run("rev-parse", "--verify", "--quiet", remote_base, cwd=cwd)).ok:
        if (await git.run("rev-parse", "--verify", "--quiet", branch, cwd=cwd)).ok:
            remote_base = branch
        else:
            raise GitOperationError(f"Base branch {remote_base} not found")

    three_dot = await git.run("diff", f"{remote_base}...HEAD", cwd=cwd)
    if three_dot.ok:
        return three_dot.stdout
    log.warning("three_dot_diff_failed", error=three_dot.stderr.strip()[:300])

    merge_base = await git.run("merge-base", "HEAD", remote_base, cwd=cwd)
    if merge_base.ok:
        explicit = await git.run("diff", f"{merge_base.stdout.strip()}..HEAD", cwd=cwd)
        if explicit.ok:
            return explicit.stdout

    log.warning("falling_back_to_two_dot_diff", base=remote_base)
    two_dot = await git.run("diff", f"{remote_base}..HEAD", cwd=cwd)
    if two_dot.ok:
        return two_dot.stdout
    raise GitOperationError(f"Failed to diff against {remote_base}: {two_dot.stderr.strip()}")


@dataclass
class ReviewIteration:
    """One pass of the loop as recorded in the result history."""

    iteration: int
    feedback: ReviewFeedback | None = None
    addressed: list[ReviewFeedbackItem] = field(default_factory=list)
    error: str | None = None


@dataclass
class ReviewLoopResult:
    iterations: int
    success: bool
    final_feedback: ReviewFeedback | None
    history: list[ReviewIteration] = field(default_factory=list)
    error: str | None = None


class ReviewLoop:
    """Drives review, fix, commit cycles in one checkout.

    Args:
        agent: Agent used both as reviewer and fixer
        cwd: Checkout under review (HEAD is the change-set)
        base_branch: Branch the change-set will merge into
        output_dir: Where per-iteration artifacts are written
        git: Git runner (injectable for tests)
        recovery: Commit/push through recovery when provided
        remote: Remote for fetching the base and pushing
        push: Push after each fix commit; False defers pushing to the caller
        parse_retries: Extra review requests when the response is malformed
        commit_attempts: Recovery budget for each commit
        context: Extra text given to the reviewer (task summary, PR title)
    """

    def __init__(
        self,
        agent: AgentProvider,
        cwd: Path | str,
        base_branch: str,
        output_dir: Path | str,
        git: GitRunner | None = None,
        recovery: RecoveryEngine | None = None,
        remote: str = "origin",
        push: bool = False,
        parse_retries: int = 2,
        commit_attempts: int = 3,
        context: str = "",
    ) -> None:
        self.agent = agent
        self.cwd = Path(cwd)
        self.base_branch = base_branch
        self.artifacts = ArtifactStore(output_dir)
        self.git = git or GitRunner()
        self.recovery = recovery
        self.remote = remote
        self.push = push
        self.parse_retries = max(0, parse_retries)
        self.commit_attempts = commit_attempts
        self.context = context

    async def get_diff(self) -> str:
        return await compute_branch_diff(self.git, self.cwd, self.base_branch, self.remote)

    async def run(
        self,
        max_iterations: int = 5,
        min_priority: ReviewPriority = ReviewPriority.MEDIUM,
    ) -> ReviewLoopResult:
        """Review and fix until converged or ``max_iterations`` passes have run."""
        history: list[ReviewIteration] = []
        final_feedback: ReviewFeedback | None = None
        converged = False
        error: str | None = None

        log.info(
            "review_loop_started",
            base=self.base_branch,
            max_iterations=max_iterations,
            min_priority=min_priority.value,
            push=self.push,
        )

        for iteration in range(1, max_iterations + 1):
            log.info("review_iteration_started", iteration=iteration, max_iterations=max_iterations)
            diff = await self.get_diff()

            try:
                feedback = await self._request_feedback(diff, iteration)
            except MalformedResponseError as e:
                log.warning("review_iteration_aborted", iteration=iteration, error=e.message)
                history.append(ReviewIteration(iteration=iteration, error=e.message))
                continue

            final_feedback = feedback
            to_address = feedback.at_or_above(min_priority)
            self._log_feedback(iteration, feedback, history)

            if not to_address:
                history.append(ReviewIteration(iteration=iteration, feedback=feedback))
                converged = True
                log.info("review_converged", iteration=iteration, approved=feedback.approved)
                break

            if feedback.approved:
                log.warning("approved_with_addressable_items", iteration=iteration, count=len(to_address))

            record = ReviewIteration(iteration=iteration, feedback=feedback, addressed=to_address)
            history.append(record)
            error = await self._apply_fixes(to_address, iteration)
            if error:
                record.error = error
                break

        success = converged and final_feedback is not None
        log.info("review_loop_finished", iterations=len(history), success=success)
        return ReviewLoopResult(
            iterations=len(history),
            success=success,
            final_feedback=final_feedback,
            history=history,
            error=error,
        )

    async def _request_feedback(self, diff: str, iteration: int) -> ReviewFeedback:
        """Ask for a review, retrying malformed responses ``parse_retries`` times."""
        prompt = build_review_prompt(diff, iteration, self.context)
        iteration_dir = f"iteration-{iteration}"
        await self.artifacts.write_text(f"{iteration_dir}/review-prompt.txt", prompt)

        parsed = FeedbackParseResult(error="Review was not requested")
        raw_outputs: list[str] = []
        for attempt in range(1, self.parse_retries + 2):
            response = await self.agent.execute_prompt(prompt, cwd=self.cwd, task_id=f"review-{iteration}")
            output = response.get("output") or ""
            raw_outputs.append(output)
            if not response.get("success"):
                parsed = FeedbackParseResult(error=f"Reviewer failed: {response.get('error')}")
            else:
                parsed = parse_review_feedback(output)
            if parsed.ok:
                break
            log.warning("review_response_malformed", iteration=iteration, attempt=attempt, error=parsed.error)

        separator = "\n\n----- retry -----\n\n"
        await self.artifacts.write_text(f"{iteration_dir}/raw-output.txt", separator.join(raw_outputs))

        if parsed.feedback is None:
            raise MalformedResponseError(
                f"Malformed review after {len(raw_outputs)} attempt(s): {parsed.error}",
                raw_output=raw_outputs[-1] if raw_outputs else "",
            )
        await self.artifacts.write_json(f"{iteration_dir}/feedback.json", parsed.feedback.model_dump(mode="json"))
        return parsed.feedback

    async def _apply_fixes(self, items: list[ReviewFeedbackItem], iteration: int) -> str | None:
        """Fix, commit and optionally push. Returns an error that should stop the loop."""
        prompt = build_fix_prompt(items, iteration)
        await self.artifacts.write_text(f"iteration-{iteration}/fix-prompt.txt", prompt)

        log.info("addressing_feedback", iteration=iteration, count=len(items))
        response = await self.agent.execute_prompt(prompt, cwd=self.cwd, task_id=f"review-fix-{iteration}")
        if not response.get("success"):
            log.warning("review_fix_agent_failed", iteration=iteration, error=response.get("error"))

        message = f"fix: address PR review feedback (iteration {iteration})"
        committed = await self._commit(message)
        if isinstance(committed, str):
            return committed
        if committed and self.push:
            return await self._push()
        return None

    async def _commit(self, message: str) -> bool | str:
        """True when a commit was made, False when there was nothing to commit, str on error."""
        if self.recovery is not None:
            outcome = await self.recovery.attempt_with_recovery(
                GitOperation.COMMIT, max_attempts=self.commit_attempts, message=message
            )
            if outcome.success:
                return True
            if outcome.failure == FailureClass.NOTHING_TO_COMMIT:
                log.info("review_fix_no_changes")
                return False
            return f"Commit failed ({outcome.final_state.value}): {outcome.final_detail.strip()[:500]}"

        await self.git.run("add", "-A", cwd=self.cwd)
        if await self.git.is_clean(self.cwd):
            log.info("review_fix_no_changes")
            return False
        result = await self.git.run("commit", "-m", message, cwd=self.cwd)
        if not result.ok:
            return f"Commit failed: {result.output.strip()[:500]}"
        return True

    async def _push(self) -> str | None:
        if self.recovery is not None:
            outcome = await self.recovery.attempt_with_recovery(GitOperation.PUSH, max_attempts=self.commit_attempts)
            if outcome.success:
                return None
            return f"Push failed ({outcome.final_state.value}): {outcome.final_detail.strip()[:500]}"

        result = await self.git.run("push", self.remote, "HEAD", cwd=self.cwd)
        return None if result.ok else f"Push failed: {result.output.strip()[:500]}"

    def _log_feedback(self, iteration: int, feedback: ReviewFeedback, history: list[ReviewIteration]) -> None:
        previous = next((h.feedback for h in reversed(history) if h.feedback is not None), None)
        delta = None if previous is None else len(feedback.items) - len(previous.items)
        log.info(
            "review_feedback_received",
            iteration=iteration,
            summary=feedback.summary,
            total=len(feedback.items),
            breakdown=feedback.priority_counts(),
            delta_from_previous=delta,
        )
