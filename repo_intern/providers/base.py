"""
Abstract base class for the code-generation agent.

The engine treats the agent as an opaque, fallible black box: it receives a
prompt, may modify files in its working directory, and reports text output.
Nothing the agent says about its own success is trusted by the engine; every
claim is re-verified with git.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any


class AgentProvider(ABC):
    """Abstract base class for agent implementations.

    Attributes:
        working_dir: Default directory the agent runs in. Individual calls may
            override it (the managed worktree moves between branches, not paths,
            but review-response runs can target other checkouts).
    """

    working_dir: str | None = None

    @abstractmethod
    async def execute_prompt(
        self,
        prompt: str,
        cwd: Path | str | None = None,
        task_id: str | None = None,
    ) -> dict[str, Any]:
        """Execute a prompt and return the result.

        Args:
            prompt: Full instruction text, delivered on stdin
            cwd: Directory to run in; defaults to ``working_dir``
            task_id: Identifier used for logging only

        Returns:
            Dict with the following structure:
                - 'success': bool, the agent process exited cleanly
                - 'output': str with the agent's stdout
                - 'error': str with error text (if success=False)

        Implementations must not raise for agent failures; they report them
        through the returned dict.
        """
        pass

    async def connect(self) -> None:
        """Check that the agent is usable. Default: nothing to check."""
        return None
