"""
Asynchronous external command execution.
"""

import asyncio
import os
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from ..exceptions import CommandFailedError, CommandNotFoundError, OperationTimeoutError
from .logging import get_logger


logger = get_logger(__name__)


@dataclass
class CommandResult:
    """Captured outcome of an external command."""
    args: List[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, in that order."""
        if self.stdout and self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr


async def run_command(
    args: Sequence[str],
    timeout: float = 120,
    check: bool = True,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    input_data: Optional[str] = None
) -> CommandResult:
    """Run an external command and capture its output.

    Args:
        args: Command and arguments
        timeout: Command timeout in seconds
        check: Raise CommandFailedError on a non-zero exit code
        env: Extra environment variables, merged over the current environment
        cwd: Working directory
        input_data: Text written to the command's stdin

    Returns:
        The captured command result

    Raises:
        CommandNotFoundError: If the binary is not installed
        OperationTimeoutError: If the command exceeds its timeout
        CommandFailedError: If check is set and the command fails
    """
    args = [str(arg) for arg in args]
    command_line = ' '.join(args)
    logger.debug(f"Running command: {command_line}")

    process_env = None
    if env:
        process_env = dict(os.environ)
        process_env.update(env)

    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.PIPE if input_data is not None else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=process_env,
            cwd=cwd
        )
    except FileNotFoundError:
        raise CommandNotFoundError(args[0])

    try:
        stdout, stderr = await asyncio.wait_for(
            process.communicate(input_data.encode() if input_data is not None else None),
            timeout=timeout
        )
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise OperationTimeoutError(operation=command_line, timeout_seconds=timeout)
    except asyncio.CancelledError:
        # An enclosing deadline expired; do not leave the child running
        process.kill()
        await process.wait()
        raise

    result = CommandResult(
        args=args,
        returncode=process.returncode,
        stdout=stdout.decode(errors='replace') if stdout else "",
        stderr=stderr.decode(errors='replace') if stderr else ""
    )

    if check and not result.ok:
        raise CommandFailedError(
            command=command_line,
            exit_code=result.returncode,
            stderr=result.stderr or result.stdout or "Unknown error"
        )

    logger.debug(f"Command output: {result.stdout}")
    return result
