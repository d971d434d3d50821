"""Pytest configuration and shared fixtures."""

import subprocess
from collections.abc import Callable
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from repo_intern.config.settings import InternSettings
from repo_intern.models.domain import WorkTask
from repo_intern.providers.base import AgentProvider

GitFn = Callable[..., str]


def _git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout.strip()


def _configure_identity(cwd: Path) -> None:
    _git(cwd, "config", "user.name", "Test User")
    _git(cwd, "config", "user.email", "test@example.com")
    _git(cwd, "config", "commit.gpgsign", "false")


@pytest.fixture
def git() -> GitFn:
    """Run a git command synchronously and return its stdout."""
    return _git


@pytest.fixture
def remote_repo(tmp_path: Path) -> Path:
    """Bare repository acting as ``origin``."""
    remote = tmp_path / "remote.git"
    _git(tmp_path, "init", "--bare", "-b", "main", str(remote))
    return remote


@pytest.fixture
def git_repo(tmp_path: Path, remote_repo: Path) -> Path:
    """Main checkout with one commit on ``main``, pushed to ``origin``."""
    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init", "-b", "main")
    _configure_identity(repo)
    (repo / "README.md").write_text("# Sample project\n")
    _git(repo, "add", "README.md")
    _git(repo, "commit", "-m", "Initial commit")
    _git(repo, "remote", "add", "origin", str(remote_repo))
    _git(repo, "push", "-u", "origin", "main")
    return repo


@pytest.fixture
def push_branch(git_repo: Path) -> Callable[[str, dict[str, str]], None]:
    """Create a branch from main with the given files and push it to origin."""

    def _push(branch: str, files: dict[str, str]) -> None:
        _git(git_repo, "checkout", "-b", branch, "main")
        for name, content in files.items():
            path = git_repo / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
            _git(git_repo, "add", name)
        _git(git_repo, "commit", "-m", f"Work on {branch}")
        _git(git_repo, "push", "origin", branch)
        _git(git_repo, "checkout", "main")

    return _push


@pytest.fixture
def settings(tmp_path: Path) -> InternSettings:
    """Settings with installs disabled and artifacts under tmp_path."""
    return InternSettings(
        git={"author_name": "Intern Bot", "author_email": "intern@example.com"},
        worktree={"install_dependencies": False},
        paths={"output_dir": str(tmp_path / "runs")},
        queue={"db_path": str(tmp_path / "queue.db")},
    )


@pytest.fixture
def mock_agent() -> MagicMock:
    """Agent whose execute_prompt succeeds with empty output."""
    agent = MagicMock(spec=AgentProvider)
    agent.execute_prompt = AsyncMock(return_value={"success": True, "output": "", "error": None})
    return agent


@pytest.fixture
def sample_task() -> WorkTask:
    return WorkTask(
        key="PROJ-123",
        summary="Add greeting module",
        prompt="Create greeting.py with a hello() function.",
        base_branch="main",
    )
