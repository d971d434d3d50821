"""Agent provider implementations.

Key Components:
    - AgentProvider: Abstract base for code-generation agents
    - ExternalAgentProvider: Runs an agent CLI (Claude Code by default) as a subprocess

Example:
    >>> from repo_intern.providers import ExternalAgentProvider
    >>> agent = ExternalAgentProvider(command="claude", max_turns=25)
    >>> result = await agent.execute_prompt("Fix the failing lint", cwd=worktree)
"""

from repo_intern.providers.base import AgentProvider
from repo_intern.providers.external_agent import ExternalAgentProvider

__all__ = [
    "AgentProvider",
    "ExternalAgentProvider",
]
