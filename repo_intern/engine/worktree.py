"""Reusable secondary git worktree.

One worktree is created once and then switched between branches for every
job. Each ``prepare`` discards whatever the previous job left behind, checks
out the requested branch at its remote state and validates the result. A
worktree that fails validation is torn down and recreated from scratch.

Ignored files (``node_modules``, virtualenvs, build output) survive switches,
which keeps dependency installation incremental.

Example:
    >>> manager = WorktreeManager(repo_root)
    >>> result = await manager.prepare("release/2.0")
    >>> if result.ok:
    ...     print(result.path, result.branch)
"""

import asyncio
import shutil
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

import structlog

from repo_intern.engine.dependencies import InstallResult, install_dependencies
from repo_intern.git.commands import GitRunner

log = structlog.get_logger(__name__)

DEFAULT_WORKTREE_DIR = Path(".repo-intern") / "worktree"

InstallFn = Callable[[Path], Awaitable[InstallResult]]


@dataclass
class WorktreeHandle:
    """Where the managed worktree lives and what it has checked out."""

    path: Path
    current_branch: str | None = None


@dataclass
class PrepareResult:
    """Outcome of :meth:`WorktreeManager.prepare`. ``error`` is set on failure."""

    path: Path
    branch: str
    error: str | None = None
    dependencies: InstallResult | None = None
    warnings: list[str] | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def ensure_excluded(repo_root: Path, pattern: str) -> None:
    """Add ``pattern`` to the repository's local exclude file if missing.

    Uses ``.git/info/exclude`` so nothing is committed to the project.
    """
    git = GitRunner()
    result = await git.run("rev-parse", "--git-common-dir", cwd=repo_root)
    if not result.ok:
        return
    common_dir = Path(result.stdout.strip())
    if not common_dir.is_absolute():
        common_dir = repo_root / common_dir
    exclude = common_dir / "info" / "exclude"
    existing = exclude.read_text(encoding="utf-8") if exclude.exists() else ""
    if pattern in existing.splitlines():
        return
    exclude.parent.mkdir(parents=True, exist_ok=True)
    suffix = "" if not existing or existing.endswith("\n") else "\n"
    exclude.write_text(f"{existing}{suffix}{pattern}\n", encoding="utf-8")
    log.debug("exclude_pattern_added", pattern=pattern)


class WorktreeManager:
    """Owns the single reusable worktree for a repository.

    Not safe for concurrent use; callers hold the process lock while preparing
    and using the worktree.

    Args:
        repo_root: Main checkout the worktree is attached to
        path: Worktree location (default ``<repo_root>/.repo-intern/worktree``)
        git: Git runner (injectable for tests)
        remote: Remote to fetch branches from
        install_deps: Run the dependency installer after each prepare
        installer: Installation coroutine (injectable for tests)
    """

    def __init__(
        self,
        repo_root: Path | str,
        path: Path | str | None = None,
        git: GitRunner | None = None,
        remote: str = "origin",
        install_deps: bool = True,
        installer: InstallFn | None = None,
    ) -> None:
        self.repo_root = Path(repo_root).resolve()
        worktree_path = Path(path) if path else self.repo_root / DEFAULT_WORKTREE_DIR
        if not worktree_path.is_absolute():
            worktree_path = self.repo_root / worktree_path
        self.handle = WorktreeHandle(path=worktree_path)
        self.git = git or GitRunner()
        self.remote = remote
        self.install_deps = install_deps
        self.installer = installer or install_dependencies

    @property
    def path(self) -> Path:
        return self.handle.path

    async def prepare(self, branch: str, start_from: str | None = None) -> PrepareResult:
        """Check out ``branch`` in the managed worktree.

        The branch is (re)set to the remote state of ``start_from`` when given,
        otherwise to its own remote state. Never raises for git failures;
        problems are reported in the result.
        """
        warnings: list[str] = []
        source = start_from or branch
        start_point = await self._resolve_start_point(source, warnings)
        if start_point is None:
            message = f"Branch '{source}' not found on remote '{self.remote}' or locally"
            log.error("worktree_branch_missing", branch=source, remote=self.remote)
            return PrepareResult(path=self.path, branch=branch, error=message, warnings=warnings)

        if self._looks_like_worktree():
            if await self._switch(branch, start_point) and await self._validate(branch):
                return await self._finish(branch, warnings)
            log.warning("worktree_corrupted", path=str(self.path), branch=branch)
            warnings.append("Worktree failed validation and was recreated")
            await self._remove()
        elif self.path.exists():
            log.warning("worktree_path_not_a_worktree", path=str(self.path))
            await self._remove()

        error = await self._create(branch, start_point)
        if error is None and not await self._validate(branch):
            error = "Recreated worktree failed validation"
        if error is not None:
            self.handle.current_branch = None
            log.error("worktree_prepare_failed", branch=branch, path=str(self.path), error=error)
            return PrepareResult(path=self.path, branch=branch, error=error, warnings=warnings)

        return await self._finish(branch, warnings)

    async def _resolve_start_point(self, branch: str, warnings: list[str]) -> str | None:
        remote_ref = f"refs/remotes/{self.remote}/{branch}"
        fetch = await self.git.run("fetch", self.remote, f"+refs/heads/{branch}:{remote_ref}", cwd=self.repo_root)
        if fetch.ok:
            return f"{self.remote}/{branch}"

        if await self.git.branch_exists(branch, self.repo_root):
            message = f"Could not fetch '{branch}' from {self.remote}; using local branch"
            log.warning("worktree_fetch_failed_using_local", branch=branch, error=fetch.stderr.strip()[:300])
            warnings.append(message)
            return branch
        return None

    def _looks_like_worktree(self) -> bool:
        return (self.path / ".git").exists()

    async def _switch(self, branch: str, start_point: str) -> bool:
        for args in (
            ("reset", "--hard"),
            ("clean", "-fd"),
            ("checkout", "--ignore-other-worktrees", "-B", branch, start_point),
        ):
            result = await self.git.run(*args, cwd=self.path)
            if not result.ok:
                log.warning("worktree_switch_step_failed", step=args[0], error=result.stderr.strip()[:300])
                return False
        return True

    async def _validate(self, branch: str) -> bool:
        if not await self.git.is_clean(self.path):
            log.warning("worktree_not_clean", path=str(self.path))
            return False
        current = await self.git.current_branch(self.path)
        if current != branch:
            log.warning("worktree_wrong_head", expected=branch, actual=current)
            return False
        return True

    async def _create(self, branch: str, start_point: str) -> str | None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        await self.git.run("worktree", "prune", cwd=self.repo_root)
        # Detached first: "worktree add -B" refuses branches checked out elsewhere.
        result = await self.git.run(
            "worktree", "add", "--force", "--detach", str(self.path), start_point, cwd=self.repo_root
        )
        if not result.ok:
            return f"git worktree add failed: {result.stderr.strip() or result.stdout.strip()}"
        checkout = await self.git.run(
            "checkout", "--ignore-other-worktrees", "-B", branch, start_point, cwd=self.path
        )
        if not checkout.ok:
            return f"git checkout of '{branch}' failed: {checkout.stderr.strip()}"
        log.info("worktree_created", path=str(self.path), branch=branch)
        return None

    async def _remove(self) -> None:
        await self.git.run("worktree", "remove", "--force", str(self.path), cwd=self.repo_root)
        if self.path.exists():
            await asyncio.to_thread(shutil.rmtree, self.path, ignore_errors=True)
        await self.git.run("worktree", "prune", cwd=self.repo_root)
        self.handle.current_branch = None
        log.info("worktree_removed", path=str(self.path))

    async def _finish(self, branch: str, warnings: list[str]) -> PrepareResult:
        self.handle.current_branch = branch
        dependencies = None
        if self.install_deps:
            dependencies = await self.installer(self.path)
            if not dependencies.success:
                warnings.append(f"Dependency installation failed: {dependencies.error}")
        log.info("worktree_prepared", path=str(self.path), branch=branch)
        return PrepareResult(
            path=self.path,
            branch=branch,
            dependencies=dependencies,
            warnings=warnings,
        )

    async def destroy(self) -> None:
        """Remove the managed worktree entirely."""
        if self.path.exists() or self._looks_like_worktree():
            await self._remove()
