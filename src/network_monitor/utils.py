"""
Process execution helpers shared by the prober, the port scanner and
network range detection.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)


class CommandResult:
    """Result of a command execution."""

    def __init__(
        self,
        exit_code: int,
        stdout: str,
        stderr: str,
        duration_sec: float
    ):
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.duration_sec = duration_sec
        self.success = exit_code == 0

    def __repr__(self):
        return f"CommandResult(exit_code={self.exit_code}, success={self.success})"


async def run_command(
    cmd: list[str],
    timeout: Optional[float] = None,
) -> CommandResult:
    """
    Run a command asynchronously and capture its output.

    Args:
        cmd: Command and arguments as list
        timeout: Timeout in seconds (None = no timeout)

    Returns:
        CommandResult with exit code, stdout, stderr, duration

    Raises:
        FileNotFoundError: If the executable does not exist
        asyncio.TimeoutError: If timeout exceeded (the process is killed)
    """
    start_time = datetime.now(timezone.utc)

    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        try:
            process.kill()
            await process.wait()
        except ProcessLookupError:
            pass
        raise

    duration = (datetime.now(timezone.utc) - start_time).total_seconds()

    return CommandResult(
        exit_code=process.returncode,
        stdout=stdout.decode("utf-8", errors="replace") if stdout else "",
        stderr=stderr.decode("utf-8", errors="replace") if stderr else "",
        duration_sec=duration,
    )


async def command_available(name: str) -> bool:
    """Check whether an executable is on PATH."""
    try:
        result = await run_command(["which", name], timeout=5)
        return result.success
    except (FileNotFoundError, asyncio.TimeoutError):
        return False
