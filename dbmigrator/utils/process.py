"""Subprocess execution with full output capture."""

import asyncio
import os
import time
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from pydantic import BaseModel

from dbmigrator.logging import get_logger


class ProcessResult(BaseModel):
    """Outcome of a finished external command."""

    command: str
    args: List[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0

    @property
    def combined(self) -> str:
        """stdout and stderr joined, as scanned by output classifiers."""
        return f"{self.stdout}\n{self.stderr}"


class ProcessError(Exception):
    """Base class for process runner failures."""


class CommandFailedError(ProcessError):
    """The command ran but exited with a non-zero code."""

    def __init__(self, result: ProcessResult) -> None:
        super().__init__(
            f"{result.command} exited with code {result.exit_code}"
        )
        self.result = result
        self.exit_code = result.exit_code
        self.stdout = result.stdout
        self.stderr = result.stderr


class CommandSpawnError(ProcessError):
    """The command could not be started at all."""

    def __init__(self, command: str, reason: str) -> None:
        super().__init__(f"Unable to start {command}: {reason}")
        self.command = command
        self.reason = reason
        self.stdout = ""
        self.stderr = ""


class ProcessRunner:
    """Runs external commands and captures stdout/stderr in memory."""

    def __init__(self) -> None:
        self.logger = get_logger("process_runner")

    async def run(
        self,
        command: str,
        args: Sequence[str] = (),
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[Path] = None,
        check: bool = True,
    ) -> ProcessResult:
        """Run a command to completion.

        Args:
            command: Executable name or path
            args: Command arguments
            env: Full environment for the child, inherits ours when omitted
            cwd: Working directory
            check: Raise CommandFailedError on a non-zero exit code

        Returns:
            Captured process result

        Raises:
            CommandSpawnError: If the process could not be started
            CommandFailedError: If check is set and the exit code is non-zero
        """
        start_time = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                command,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=dict(env) if env is not None else None,
                cwd=str(cwd) if cwd is not None else None,
            )
        except OSError as e:
            self.logger.debug("command_spawn_failed", command=command, error=str(e))
            raise CommandSpawnError(command, e.strerror or str(e)) from e

        stdout, stderr = await proc.communicate()

        result = ProcessResult(
            command=command,
            args=list(args),
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            duration=time.monotonic() - start_time,
        )

        self.logger.debug(
            "command_executed",
            command=command,
            args=list(args),
            exit_code=result.exit_code,
            duration_ms=round(result.duration * 1000, 1),
        )

        if check and result.exit_code != 0:
            raise CommandFailedError(result)

        return result


def child_environment(**overrides: str) -> Dict[str, str]:
    """Copy of the current environment with overrides applied."""
    env = dict(os.environ)
    env.update(overrides)
    return env
