"""Typed git command runner built on the async subprocess helpers."""

from dataclasses import dataclass
from pathlib import Path

import structlog

from repo_intern.utils.async_subprocess import run_command

log = structlog.get_logger(__name__)

# Shell convention for "command not found".
EXIT_NOT_FOUND = 127


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a single external command."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """stdout and stderr joined, for classification and logging."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


class GitRunner:
    """Runs git subcommands and captures their results.

    ``run`` never raises on a non-zero exit code. A missing ``git`` executable
    or an unusable working directory is reported as exit code 127 with the OS
    error in ``stderr``.
    """

    def __init__(self, executable: str = "git") -> None:
        self.executable = executable

    async def run(self, *args: str, cwd: Path | str | None = None, input: str | None = None) -> CommandResult:
        """Execute ``git <args>`` in ``cwd``."""
        log.debug("git_command", args=list(args), cwd=str(cwd) if cwd else None)
        try:
            stdout, stderr, code = await run_command(self.executable, *args, cwd=cwd, check=False, input=input)
        except (FileNotFoundError, NotADirectoryError, PermissionError) as e:
            log.warning("git_unavailable", args=list(args), error=str(e))
            return CommandResult(exit_code=EXIT_NOT_FOUND, stderr=str(e))

        if code != 0:
            log.debug("git_command_failed", args=list(args), exit_code=code, stderr=stderr.strip()[:500])
        return CommandResult(exit_code=code, stdout=stdout, stderr=stderr)

    async def is_clean(self, cwd: Path | str) -> bool:
        """True when ``git status --porcelain`` succeeds and reports nothing."""
        result = await self.run("status", "--porcelain", cwd=cwd)
        return result.ok and not result.stdout.strip()

    async def current_branch(self, cwd: Path | str) -> str | None:
        """Return the checked-out branch name, or None when detached/unreadable."""
        result = await self.run("rev-parse", "--abbrev-ref", "HEAD", cwd=cwd)
        if not result.ok:
            return None
        branch = result.stdout.strip()
        if not branch or branch == "HEAD":
            return None
        return branch

    async def branch_exists(self, branch: str, cwd: Path | str) -> bool:
        """Check for a local branch ref."""
        result = await self.run("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}", cwd=cwd)
        return result.ok

    async def remote_branch_exists(self, branch: str, cwd: Path | str, remote: str = "origin") -> bool:
        """Check for a remote-tracking ref (as of the last fetch)."""
        result = await self.run("rev-parse", "--verify", "--quiet", f"refs/remotes/{remote}/{branch}", cwd=cwd)
        return result.ok

    async def has_commits_ahead(self, base: str, cwd: Path | str) -> bool:
        """True when HEAD carries commits not reachable from ``base``."""
        result = await self.run("rev-list", "--count", f"{base}..HEAD", cwd=cwd)
        if not result.ok:
            return False
        try:
            return int(result.stdout.strip() or "0") > 0
        except ValueError:
            return False
