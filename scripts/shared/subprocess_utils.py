#!/usr/bin/env python3
"""
Subprocess Execution Utilities

Blocking and asyncio command runners that return a CommandResult instead of
raising on non-zero exit. Git helpers use the blocking runner; agent
subprocesses use the async one so several can run on one event loop.
"""

import asyncio
import logging
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124  # Standard timeout exit code


@dataclass
class CommandResult:
    """Result of command execution with complete context."""
    stdout: str
    stderr: str
    exit_code: int
    duration: float
    command: str
    cwd: Optional[str] = None
    timed_out: bool = False
    error_message: Optional[str] = None

    @property
    def success(self) -> bool:
        """Check if command succeeded (exit_code == 0)"""
        return self.exit_code == 0

    @property
    def failed(self) -> bool:
        """Check if command failed (exit_code != 0)"""
        return self.exit_code != 0

    def __repr__(self) -> str:
        status = "SUCCESS" if self.success else f"FAILED({self.exit_code})"
        return f"CommandResult({status}, duration={self.duration:.1f}s)"


def _describe(cmd: List[str], limit: int = 200) -> str:
    text = ' '.join(cmd)
    return text if len(text) <= limit else text[:limit] + "..."


def run_command(
    cmd: List[str],
    cwd: Optional[Union[str, Path]] = None,
    timeout: Optional[float] = None,
    env: Optional[Dict[str, str]] = None,
    input_text: Optional[str] = None
) -> CommandResult:
    """
    Run a command to completion (blocking).

    Args:
        cmd: Command and arguments
        cwd: Working directory for command
        timeout: Optional timeout in seconds
        env: Optional environment variables
        input_text: Optional stdin input

    Returns:
        CommandResult with all execution details (exit code 124 on timeout)
    """
    start_time = time.time()
    cmd_str = _describe(cmd)
    cwd_str = str(cwd) if cwd else None

    logger.debug(f"Running command: {cmd_str}" + (f" in {cwd_str}" if cwd_str else ""))

    try:
        result = subprocess.run(
            cmd,
            cwd=cwd_str,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
            input=input_text
        )
    except subprocess.TimeoutExpired as e:
        duration = time.time() - start_time
        logger.warning(f"Command timed out after {duration:.1f}s: {cmd_str}")
        return CommandResult(
            stdout=e.stdout.decode(errors="replace") if isinstance(e.stdout, bytes) else (e.stdout or ""),
            stderr=e.stderr.decode(errors="replace") if isinstance(e.stderr, bytes) else (e.stderr or ""),
            exit_code=TIMEOUT_EXIT_CODE,
            duration=duration,
            command=cmd_str,
            cwd=cwd_str,
            timed_out=True,
            error_message=f"Command exceeded {timeout}s timeout"
        )
    except OSError as e:
        duration = time.time() - start_time
        logger.error(f"Command execution error: {e}")
        return CommandResult(
            stdout="",
            stderr=str(e),
            exit_code=127,
            duration=duration,
            command=cmd_str,
            cwd=cwd_str,
            error_message=str(e)
        )

    duration = time.time() - start_time
    logger.debug(f"Command completed: exit_code={result.returncode}, duration={duration:.1f}s")

    return CommandResult(
        stdout=result.stdout,
        stderr=result.stderr,
        exit_code=result.returncode,
        duration=duration,
        command=cmd_str,
        cwd=cwd_str
    )


async def run_command_async(
    cmd: List[str],
    cwd: Optional[Union[str, Path]] = None,
    timeout: Optional[float] = None,
    env: Optional[Dict[str, str]] = None,
    input_text: Optional[str] = None
) -> CommandResult:
    """
    Run a command on the event loop.

    The child process is killed if the timeout expires or the awaiting task
    is cancelled; cancellation is re-raised after the kill.

    Args:
        cmd: Command and arguments
        cwd: Working directory for command
        timeout: Optional timeout in seconds
        env: Optional environment variables (replaces the inherited environment)
        input_text: Optional stdin input

    Returns:
        CommandResult (exit code 124 and timed_out=True on timeout)
    """
    start_time = time.time()
    cmd_str = _describe(cmd)
    cwd_str = str(cwd) if cwd else None

    logger.debug(f"Starting async command: {cmd_str}" + (f" in {cwd_str}" if cwd_str else ""))

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=cwd_str,
            env=env,
            stdin=asyncio.subprocess.PIPE if input_text is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        logger.error(f"Command execution error: {e}")
        return CommandResult(
            stdout="",
            stderr=str(e),
            exit_code=127,
            duration=time.time() - start_time,
            command=cmd_str,
            cwd=cwd_str,
            error_message=str(e)
        )

    stdin_bytes = input_text.encode("utf-8") if input_text is not None else None
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(stdin_bytes), timeout=timeout)
    except asyncio.TimeoutError:
        await _kill(process)
        duration = time.time() - start_time
        logger.warning(f"Command timed out after {duration:.1f}s: {cmd_str}")
        return CommandResult(
            stdout="",
            stderr="",
            exit_code=TIMEOUT_EXIT_CODE,
            duration=duration,
            command=cmd_str,
            cwd=cwd_str,
            timed_out=True,
            error_message=f"Command exceeded {timeout}s timeout"
        )
    except asyncio.CancelledError:
        await _kill(process)
        raise

    duration = time.time() - start_time
    logger.debug(f"Async command completed: exit_code={process.returncode}, duration={duration:.1f}s")

    return CommandResult(
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        exit_code=process.returncode,
        duration=duration,
        command=cmd_str,
        cwd=cwd_str
    )


async def _kill(process: asyncio.subprocess.Process) -> None:
    """Kill a child process and reap it"""
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        return
    await process.wait()
