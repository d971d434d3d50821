"""Git command execution.

All version-control interaction goes through discrete ``git`` invocations.
Results are returned as ``CommandResult`` values; a non-zero exit code is data,
not an exception.

Example:
    >>> from repo_intern.git import GitRunner
    >>> git = GitRunner()
    >>> result = await git.run("status", "--porcelain", cwd=worktree)
    >>> if result.ok and not result.stdout.strip():
    ...     print("clean")
"""

from repo_intern.git.commands import CommandResult, GitRunner

__all__ = [
    "CommandResult",
    "GitRunner",
]
