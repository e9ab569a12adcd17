"""Async subprocess utilities.

Provides non-blocking shell execution for the command-based fix executor,
so that formatters, dependency installers and git commands never stall the
coordination loop.

Example:
    >>> from repo_autopilot.utils.async_subprocess import run_shell_command
    >>> stdout, stderr, code = await run_shell_command("ruff format .", cwd="/repo")
"""

import asyncio
import subprocess
from pathlib import Path


async def run_shell_command(
    command: str,
    *,
    cwd: Path | str | None = None,
    check: bool = True,
    timeout: float | None = None,
) -> tuple[str, str, int]:
    """Run a shell command asynchronously.

    Args:
        command: Complete shell command string, passed to /bin/sh -c
        cwd: Working directory for command execution
        check: Raise CalledProcessError on a non-zero exit code
        timeout: Maximum seconds to wait. The process is killed if exceeded.

    Returns:
        Tuple of (stdout, stderr, return_code)

    Raises:
        subprocess.CalledProcessError: If check=True and the command fails
        TimeoutError: If timeout is exceeded
    """
    process = await asyncio.create_subprocess_shell(
        command,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            process.communicate(),
            timeout=timeout,
        )
    except TimeoutError:
        process.kill()
        await process.wait()
        raise

    stdout = (stdout_bytes or b"").decode("utf-8", errors="replace")
    stderr = (stderr_bytes or b"").decode("utf-8", errors="replace")

    if check and process.returncode != 0:
        raise subprocess.CalledProcessError(
            process.returncode,
            command,
            stdout,
            stderr,
        )

    return stdout, stderr, process.returncode or 0
