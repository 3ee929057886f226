"""External tool invocation.

Builders never spawn processes themselves; they describe a ``ToolInvocation``
and hand it to a ``ToolRunner``. Production code uses
``SubprocessToolRunner``; tests substitute a fake that records invocations.

There is no timeout and no cancellation: once spawned, a tool runs until it
exits on its own.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from ..errors import BuildIOError, ToolNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolInvocation:
    """One external tool run, scoped to a working directory."""

    program: str
    args: tuple[str, ...] = ()
    cwd: Path | None = None
    env: Mapping[str, str] = field(default_factory=dict)

    @property
    def command_line(self) -> list[str]:
        return [self.program, *self.args]

    def __str__(self) -> str:
        return " ".join(self.command_line)


@dataclass(frozen=True)
class ToolResult:
    """Fully collected outcome of a tool run."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class ToolRunner(Protocol):
    """Port for spawning external tools."""

    async def run(self, invocation: ToolInvocation) -> ToolResult:
        """Run the tool to completion and return its collected output."""
        ...


class SubprocessToolRunner:
    """Runs tools as asyncio subprocesses with piped output."""

    async def run(self, invocation: ToolInvocation) -> ToolResult:
        """Spawn the tool, wait for it to exit, collect stdout and stderr.

        Raises:
            ToolNotFoundError: If the program cannot be found
            BuildIOError: If the process cannot be spawned or read
        """
        env = None
        if invocation.env:
            env = {**os.environ, **invocation.env}

        logger.debug(f"Executing {invocation} in {invocation.cwd}")

        try:
            # Never use shell=True
            process = await asyncio.create_subprocess_exec(
                *invocation.command_line,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(invocation.cwd) if invocation.cwd is not None else None,
                env=env,
            )
        except FileNotFoundError as e:
            raise ToolNotFoundError(invocation.program) from e
        except OSError as e:
            raise BuildIOError(f"Failed to execute {invocation.program}: {e}") from e

        try:
            stdout, stderr = await process.communicate()
        except OSError as e:
            raise BuildIOError(f"Failed to read output of {invocation.program}: {e}") from e

        exit_code = process.returncode if process.returncode is not None else -1
        return ToolResult(
            exit_code=exit_code,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
