"""End-to-end workflows: implement a task, or respond to a review.

The runner composes the lower layers: it prepares the managed worktree, drives
the agent, commits and pushes through recovery, and optionally runs the
self-review loop. Callers hold the process lock for the duration of a run.

Example:
    >>> async with ProcessLock(repo_root):
    ...     runner = WorkflowRunner(settings, repo_root)
    ...     result = await runner.run_task(task)
    >>> result.branch
    'feature/PROJ-123'
"""

from dataclasses import dataclass, field
from pathlib import Path

import structlog

from repo_intern.config.settings import InternSettings
from repo_intern.engine.artifacts import ArtifactStore
from repo_intern.engine.prompts import (
    build_plan_implementation_prompt,
    build_review_response_prompt,
    build_task_prompt,
    detect_plan_only,
)
from repo_intern.engine.recovery import RecoveryEngine
from repo_intern.engine.review_loop import ReviewLoop, ReviewLoopResult
from repo_intern.engine.worktree import WorktreeManager
from repo_intern.enums import GitOperation, ReviewPriority
from repo_intern.exceptions import AgentError, WorkflowError, WorktreeError
from repo_intern.git.commands import GitRunner
from repo_intern.models.domain import ReviewRequest, WorkTask
from repo_intern.providers.base import AgentProvider
from repo_intern.providers.external_agent import ExternalAgentProvider
from repo_intern.utils.logging_config import bind_context

log = structlog.get_logger(__name__)

MAX_BRANCH_ATTEMPTS = 100


@dataclass
class WorkflowResult:
    """What a workflow run produced."""

    key: str
    branch: str
    worktree_path: Path
    output_dir: Path
    committed: bool = False
    pushed: bool = False
    review: ReviewLoopResult | None = None
    warnings: list[str] = field(default_factory=list)


class WorkflowRunner:
    """Runs workflows against one repository's managed worktree.

    Args:
        settings: Loaded configuration
        repo_root: Main checkout of the repository
        agent: Agent provider (default: external CLI from settings)
        git: Git runner (injectable for tests)
        worktree: Worktree manager (default: one built from settings)
    """

    def __init__(
        self,
        settings: InternSettings,
        repo_root: Path | str,
        agent: AgentProvider | None = None,
        git: GitRunner | None = None,
        worktree: WorktreeManager | None = None,
    ) -> None:
        self.settings = settings
        self.repo_root = Path(repo_root).resolve()
        self.git = git or GitRunner()
        self.agent = agent or ExternalAgentProvider(
            command=settings.agent.command,
            max_turns=settings.agent.max_turns,
            extra_args=settings.agent.extra_args,
            working_dir=str(self.repo_root),
            timeout=settings.agent.timeout,
        )
        self.worktree = worktree or WorktreeManager(
            self.repo_root,
            path=settings.worktree.path,
            git=self.git,
            remote=settings.git.remote,
            install_deps=settings.worktree.install_dependencies,
        )

    def _output_root(self) -> Path:
        root = self.settings.output_dir
        return root if root.is_absolute() else self.repo_root / root

    def _recovery(self, cwd: Path, artifacts: ArtifactStore) -> RecoveryEngine:
        return RecoveryEngine(
            cwd,
            agent=self.agent,
            git=self.git,
            remote=self.settings.git.remote,
            hook_log_path=artifacts.hook_log_path,
        )

    async def _prepare(self, branch: str, start_from: str | None = None) -> Path:
        result = await self.worktree.prepare(branch, start_from=start_from)
        if not result.ok:
            raise WorktreeError(f"Could not prepare worktree for '{branch}': {result.error}")
        await self._configure_author(result.path)
        return result.path

    async def _configure_author(self, cwd: Path) -> None:
        if self.settings.git.author_name:
            await self.git.run("config", "user.name", self.settings.git.author_name, cwd=cwd)
        if self.settings.git.author_email:
            await self.git.run("config", "user.email", self.settings.git.author_email, cwd=cwd)

    def _ensure_not_protected(self, branch: str) -> None:
        if branch in self.settings.git.protected_branches:
            raise WorkflowError(f"Refusing to push work to protected branch '{branch}'")

    async def feature_branch_name(self, task: WorkTask) -> str:
        """Pick ``<prefix><task-key>`` or the first free ``-attempt-N`` variant.

        A name is taken when it exists locally or on the remote; N starts at 2.
        """
        remote = self.settings.git.remote
        fetch = await self.git.run("fetch", "--prune", remote, cwd=self.repo_root)
        if not fetch.ok:
            log.warning("remote_fetch_failed", remote=remote, error=fetch.stderr.strip()[:300])

        base_name = f"{self.settings.git.branch_prefix}{task.slug}"
        name = base_name
        for attempt in range(2, MAX_BRANCH_ATTEMPTS + 2):
            taken = await self.git.branch_exists(name, self.repo_root) or await self.git.remote_branch_exists(
                name, self.repo_root, remote
            )
            if not taken:
                return name
            log.info("feature_branch_taken", branch=name)
            name = f"{base_name}-attempt-{attempt}"
        raise WorkflowError(f"No free branch name found for {base_name}")

    async def _run_agent(self, prompt: str, cwd: Path, task_id: str) -> str:
        response = await self.agent.execute_prompt(prompt, cwd=cwd, task_id=task_id)
        if not response.get("success"):
            raise AgentError(f"Agent failed for {task_id}: {response.get('error')}")
        return response.get("output") or ""

    async def _has_changes(self, cwd: Path, base: str) -> bool:
        return not await self.git.is_clean(cwd) or await self.git.has_commits_ahead(base, cwd)

    async def run_task(
        self,
        task: WorkTask,
        push: bool = True,
        auto_review: bool | None = None,
        max_iterations: int | None = None,
        min_priority: ReviewPriority | None = None,
    ) -> WorkflowResult:
        """Implement ``task`` on a new feature branch.

        Raises:
            WorktreeError: The worktree could not be prepared
            AgentError: The agent failed or produced no changes
            GateRejectionError / NonRecoverableGitError: Commit or push failed
        """
        bind_context(task_key=task.key)
        review_enabled = self.settings.review.enabled if auto_review is None else auto_review
        artifacts = ArtifactStore(self._output_root() / task.slug)

        branch = await self.feature_branch_name(task)
        self._ensure_not_protected(branch)
        cwd = await self._prepare(branch, start_from=task.base_branch)
        log.info("feature_branch_created", branch=branch, base=task.base_branch)
        result = WorkflowResult(key=task.key, branch=branch, worktree_path=cwd, output_dir=artifacts.root)

        prompt = build_task_prompt(task)
        await artifacts.write_text("task-prompt.txt", prompt)
        output = await self._run_agent(prompt, cwd, task.key)
        await artifacts.write_text("agent-output.txt", output)

        base_ref = f"{self.settings.git.remote}/{task.base_branch}"
        if not await self._has_changes(cwd, base_ref):
            plan_only, plan_path = detect_plan_only(output)
            if not plan_only:
                raise AgentError(f"Agent produced no changes for {task.key}")
            log.info("plan_only_detected", plan_path=plan_path)
            result.warnings.append("Agent only wrote a plan; re-ran once to implement it")
            retry_prompt = build_plan_implementation_prompt(task, plan_path)
            retry_output = await self._run_agent(retry_prompt, cwd, f"{task.key}-implement-plan")
            await artifacts.write_text("agent-output-plan-retry.txt", retry_output)
            if not await self._has_changes(cwd, base_ref):
                raise AgentError(f"Agent produced no changes for {task.key} after plan re-run")

        recovery = self._recovery(cwd, artifacts)
        if not await self.git.is_clean(cwd):
            outcome = await recovery.attempt_with_recovery(
                GitOperation.COMMIT,
                max_attempts=self.settings.recovery.max_attempts,
                message=f"feat({task.key}): {task.summary}",
            )
            outcome.raise_for_failure()
        result.committed = True

        # Deferred mode reviews before the first push; otherwise the loop pushes each fix.
        review_before_push = review_enabled and (self.settings.review.skip_push or not push)
        review_after_push = review_enabled and not review_before_push
        context = f"{task.key}: {task.summary}"

        if review_before_push:
            result.review = await self._review(
                task.base_branch, cwd, artifacts, recovery, False, max_iterations, min_priority, context
            )

        if push:
            outcome = await recovery.attempt_with_recovery(
                GitOperation.PUSH, max_attempts=self.settings.recovery.max_attempts
            )
            outcome.raise_for_failure()
            result.pushed = True

        if review_after_push:
            result.review = await self._review(
                task.base_branch, cwd, artifacts, recovery, True, max_iterations, min_priority, context
            )

        log.info("task_completed", branch=branch, pushed=result.pushed, reviewed=result.review is not None)
        return result

    async def _review(
        self,
        base_branch: str,
        cwd: Path,
        artifacts: ArtifactStore,
        recovery: RecoveryEngine,
        push: bool,
        max_iterations: int | None,
        min_priority: ReviewPriority | None,
        context: str = "",
    ) -> ReviewLoopResult:
        loop = ReviewLoop(
            self.agent,
            cwd,
            base_branch=base_branch,
            output_dir=artifacts.root / "review",
            git=self.git,
            recovery=recovery,
            remote=self.settings.git.remote,
            push=push,
            parse_retries=self.settings.review.parse_retries,
            commit_attempts=self.settings.recovery.max_attempts,
            context=context,
        )
        return await loop.run(
            max_iterations=max_iterations or self.settings.review.max_iterations,
            min_priority=min_priority or self.settings.review.min_priority,
        )

    async def review_branch(
        self,
        branch: str,
        base_branch: str,
        push: bool = False,
        max_iterations: int | None = None,
        min_priority: ReviewPriority | None = None,
    ) -> ReviewLoopResult:
        """Run only the review loop on an existing branch."""
        bind_context(task_key=f"review-{branch}")
        self._ensure_not_protected(branch)
        cwd = await self._prepare(branch)
        artifacts = ArtifactStore(self._output_root() / f"review-{branch.replace('/', '-')}")
        recovery = self._recovery(cwd, artifacts)
        review = await self._review(base_branch, cwd, artifacts, recovery, push, max_iterations, min_priority)
        return review

    async def address_review(self, request: ReviewRequest, push: bool = True) -> WorkflowResult:
        """Apply a human "changes requested" review to the pull request branch."""
        bind_context(task_key=request.key)
        self._ensure_not_protected(request.head_branch)
        artifacts = ArtifactStore(self._output_root() / request.key)

        cwd = await self._prepare(request.head_branch)
        result = WorkflowResult(
            key=request.key,
            branch=request.head_branch,
            worktree_path=cwd,
            output_dir=artifacts.root,
        )

        prompt = build_review_response_prompt(
            request.pr_number, request.reviewer, request.review_body, request.comments
        )
        await artifacts.write_text("review-response-prompt.txt", prompt)
        output = await self._run_agent(prompt, cwd, request.key)
        await artifacts.write_text("agent-output.txt", output)

        if await self.git.is_clean(cwd):
            log.info("review_produced_no_changes", pr=request.pr_number)
            result.warnings.append("Agent made no changes in response to the review")
            return result

        recovery = self._recovery(cwd, artifacts)
        outcome = await recovery.attempt_with_recovery(
            GitOperation.COMMIT,
            max_attempts=self.settings.recovery.max_attempts,
            message=f"fix: address review feedback from {request.reviewer} (PR #{request.pr_number})",
        )
        outcome.raise_for_failure()
        result.committed = True

        if push:
            outcome = await recovery.attempt_with_recovery(
                GitOperation.PUSH, max_attempts=self.settings.recovery.max_attempts
            )
            outcome.raise_for_failure()
            result.pushed = True

        log.info("review_addressed", pr=request.pr_number, pushed=result.pushed)
        return result
