"""Awaitable subprocess execution.

git, package managers and the agent CLI all run through ``run_command`` so
none of them blocks the event loop. Arguments are passed as a vector, never
through a shell.

Example:
    >>> from repo_intern.utils.async_subprocess import run_command
    >>> stdout, stderr, code = await run_command("git", "status", cwd="/repo", check=False)
    >>> if code == 0:
    ...     print(stdout)

Each call owns its own child process, so concurrent calls from different tasks
do not interfere.
"""

import asyncio
import os
import subprocess
from collections.abc import Mapping
from pathlib import Path


async def run_command(
    *args: str,
    cwd: Path | str | None = None,
    check: bool = True,
    timeout: float | None = None,
    input: str | None = None,
    env: Mapping[str, str] | None = None,
) -> tuple[str, str, int]:
    """Run ``args[0]`` with the remaining arguments and collect its output.

    Args:
        *args: Executable followed by its arguments
        cwd: Directory to run in (default: the current directory)
        check: Raise CalledProcessError on a non-zero exit status
        timeout: Seconds to wait before the child is killed; None waits forever
        input: Text written to stdin, which is then closed. Large prompts go
            here instead of the argument list ("Argument list too long").
        env: Variables layered over the parent environment

    Returns:
        (stdout, stderr, exit_code), decoded as UTF-8 with invalid bytes replaced

    Raises:
        subprocess.CalledProcessError: ``check`` is set and the exit status is non-zero
        TimeoutError: ``timeout`` elapsed; the child has already been killed
        asyncio.CancelledError: The awaiting task was cancelled; the child is
            left running and is not waited on
        FileNotFoundError / PermissionError: The executable cannot be started

    Example:
        >>> stdout, _, _ = await run_command("claude", "--print", cwd=worktree, input=prompt)
    """
    process_env = {**os.environ, **env} if env else None

    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=process_env,
    )

    payload = input.encode("utf-8") if input is not None else None
    try:
        out, err = await asyncio.wait_for(process.communicate(payload), timeout=timeout)
    except TimeoutError:
        process.kill()
        await process.wait()
        raise

    stdout = (out or b"").decode("utf-8", errors="replace")
    stderr = (err or b"").decode("utf-8", errors="replace")
    code = process.returncode or 0

    if check and code != 0:
        raise subprocess.CalledProcessError(code, args, stdout, stderr)

    return stdout, stderr, code
