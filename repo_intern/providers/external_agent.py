"""External agent provider that runs a code-generation CLI as a subprocess."""

import os
from pathlib import Path
from typing import Any

import structlog

from repo_intern.exceptions import AgentError
from repo_intern.providers.base import AgentProvider
from repo_intern.utils.async_subprocess import run_command

log = structlog.get_logger(__name__)


class ExternalAgentProvider(AgentProvider):
    """Agent provider that executes prompts with an external CLI (Claude Code by default).

    The prompt is passed on stdin to avoid "Argument list too long" for large
    prompts. The CLI runs non-interactively and edits files in place.
    """

    def __init__(
        self,
        command: str = "claude",
        max_turns: int = 25,
        extra_args: list[str] | None = None,
        working_dir: str | None = None,
        timeout: float | None = None,
    ):
        """Initialize external agent provider.

        Args:
            command: Agent executable name or path
            max_turns: Upper bound on agent turns per invocation
            extra_args: Additional CLI arguments appended verbatim
            working_dir: Default working directory for agent execution
            timeout: Seconds before the agent process is killed (None = no limit)
        """
        self.command = command
        self.max_turns = max_turns
        self.extra_args = extra_args or []
        self.working_dir = working_dir or os.getcwd()
        self.timeout = timeout

    def build_command(self) -> list[str]:
        cmd = [self.command, "--print", "--dangerously-skip-permissions"]
        if self.max_turns:
            cmd.extend(["--max-turns", str(self.max_turns)])
        cmd.extend(self.extra_args)
        return cmd

    async def connect(self) -> None:
        """Check if the agent CLI is available."""
        try:
            _, _, code = await run_command(self.command, "--version", check=False)
        except FileNotFoundError as e:
            log.error("agent_cli_not_found", command=self.command)
            raise AgentError("Agent CLI not found in PATH", agent_command=self.command) from e

        if code == 0:
            log.info("agent_cli_available", command=self.command)
        else:
            log.warning("agent_cli_check_failed", command=self.command, code=code)

    async def execute_prompt(
        self,
        prompt: str,
        cwd: Path | str | None = None,
        task_id: str | None = None,
    ) -> dict[str, Any]:
        """Execute a prompt using the external agent CLI.

        Returns:
            Dict with execution results:
                - success: bool
                - output: str (agent stdout)
                - error: Optional[str]
        """
        run_dir = str(cwd or self.working_dir)
        cmd = self.build_command()
        log.info("executing_prompt", command=self.command, task_id=task_id, prompt_length=len(prompt), cwd=run_dir)

        try:
            stdout, stderr, code = await run_command(
                *cmd,
                cwd=run_dir,
                check=False,
                timeout=self.timeout,
                input=prompt,
            )
        except (FileNotFoundError, PermissionError) as e:
            log.error("agent_spawn_failed", command=self.command, task_id=task_id, error=str(e))
            return {"success": False, "output": "", "error": f"Failed to start {self.command}: {e}"}
        except TimeoutError:
            log.error("agent_timeout", command=self.command, task_id=task_id, timeout=self.timeout)
            return {"success": False, "output": "", "error": f"{self.command} timed out after {self.timeout}s"}

        success = code == 0
        error = None
        if not success:
            error = stderr.strip() or f"{self.command} exited with code {code}"
            if _reached_max_turns(stdout + stderr):
                error = f"{error} (reached max turns: {self.max_turns})"

        log.info(
            "prompt_executed",
            task_id=task_id,
            success=success,
            exit_code=code,
            output_length=len(stdout),
            error_length=len(stderr),
        )
        return {"success": success, "output": stdout, "error": error}


def _reached_max_turns(output: str) -> bool:
    return "Reached max turns" in output or "max-turns" in output
