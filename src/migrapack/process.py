"""Blocking subprocess runner with explicit timeout and structured results.

Every external tool the engine drives (build, test, coverage, tidy, git) goes
through ``run_command`` so that process failure and timeout are values on a
``CommandResult`` rather than exceptions.
"""

import logging
import os
import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

logger = logging.getLogger(__name__)

Command = Union[str, Sequence[str]]


@dataclass
class CommandResult:
    """Result of one external process invocation."""

    command: List[str]
    returncode: int
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False
    not_found: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def output(self) -> str:
        """Combined stdout and stderr."""
        if self.stdout and self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr


def split_command(command: Command) -> List[str]:
    """Normalize a command string or sequence into an argv list."""
    if isinstance(command, str):
        return shlex.split(command)
    return [str(part) for part in command]


def run_command(
    command: Command,
    cwd: Path,
    timeout: Optional[float] = None,
    env: Optional[Dict[str, str]] = None,
) -> CommandResult:
    """Run a command and wait for it to finish.

    Args:
        command: Command string (shlex-split, never run through a shell) or argv list
        cwd: Working directory for the process
        timeout: Seconds before the process is killed
        env: Extra environment variables layered over os.environ

    Returns:
        CommandResult; a timeout yields ``timed_out=True`` and returncode -1,
        a missing executable yields ``not_found=True`` and returncode 127.
    """
    argv = split_command(command)
    if not argv:
        raise ValueError("Command must be a non-empty string or list")

    process_env = None
    if env:
        process_env = os.environ.copy()
        process_env.update(env)

    start = time.monotonic()
    try:
        result = subprocess.run(
            argv,
            cwd=str(cwd),
            capture_output=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
            env=process_env,
        )
    except subprocess.TimeoutExpired as e:
        duration_ms = int((time.monotonic() - start) * 1000)
        logger.warning(f"Command timed out after {timeout}s: {' '.join(argv)}")
        return CommandResult(
            command=argv,
            returncode=-1,
            stdout=_as_text(e.stdout),
            stderr=_as_text(e.stderr) or f"Command timed out after {timeout}s",
            duration_ms=duration_ms,
            timed_out=True,
        )
    except FileNotFoundError:
        duration_ms = int((time.monotonic() - start) * 1000)
        logger.warning(f"Command not found: {argv[0]}")
        return CommandResult(
            command=argv,
            returncode=127,
            stdout="",
            stderr=f"Command not found: {argv[0]}",
            duration_ms=duration_ms,
            not_found=True,
        )

    duration_ms = int((time.monotonic() - start) * 1000)
    return CommandResult(
        command=argv,
        returncode=result.returncode,
        stdout=result.stdout or "",
        stderr=result.stderr or "",
        duration_ms=duration_ms,
    )


def _as_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)
