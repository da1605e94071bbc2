"""
pipewright.integrations.commands - Command Runner Interface
=============================================================

``run`` steps are opaque to the orchestration core: the executor passes the
command, working directory and merged environment to a CommandRunner and
only looks at the exit code.

Implementations:
    - SubprocessCommandRunner: Real shell commands via asyncio subprocesses
    - ScriptedCommandRunner:   Canned results for tests and dry runs

Usage:
    >>> runner = ScriptedCommandRunner()
    >>> runner.script("cargo test", exit_code=1, stderr="1 test failed")
    >>> result = await runner.run("cargo test --verbose", cwd=Path("."), env={})
    >>> result.exit_code
    1
"""

from __future__ import annotations

import asyncio
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import structlog
from pydantic import BaseModel, Field


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()


class CommandResult(BaseModel):
    """Outcome of one command invocation."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = Field(default=0.0, ge=0)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandRunner(ABC):
    """Abstract executor for shell commands."""

    @abstractmethod
    async def run(
        self,
        command: str,
        cwd: Path,
        env: dict[str, str],
    ) -> CommandResult:
        """Run a shell command to completion.

        Args:
            command: Shell command line (may span several lines).
            cwd: Working directory.
            env: Variables layered over the process environment.

        Returns:
            The command's exit code and captured output. A non-zero exit
            code is a result, not an exception.
        """
        ...


# =============================================================================
# Subprocess Runner
# =============================================================================
class SubprocessCommandRunner(CommandRunner):
    """Runs commands through the system shell.

    Cancellation of the awaiting task kills the child process before the
    CancelledError propagates, so a cancelled job leaves no process behind.
    """

    def __init__(self, shell: Optional[str] = None) -> None:
        self.shell = shell
        self._logger = logger.bind(component="subprocess_runner")

    async def run(
        self,
        command: str,
        cwd: Path,
        env: dict[str, str],
    ) -> CommandResult:
        loop = asyncio.get_running_loop()
        started = loop.time()
        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd),
            env={**os.environ, **env},
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            executable=self.shell,
        )
        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            self._logger.warning("command_killed", command=command, pid=proc.pid)
            raise

        result = CommandResult(
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            duration_seconds=loop.time() - started,
        )
        self._logger.debug(
            "command_finished",
            command=command,
            exit_code=result.exit_code,
            duration_seconds=round(result.duration_seconds, 3),
        )
        return result


# =============================================================================
# Scripted Runner
# =============================================================================
class ScriptedCommand(BaseModel):
    """A canned response for commands containing ``pattern``.

    Attributes:
        pattern: Substring matched against the command line.
        exit_code: Exit code to report.
        stdout: Captured stdout to report.
        stderr: Captured stderr to report.
        delay: Seconds to sleep before answering (simulates long work).
        writes: Files to create in the working directory, path → text.
    """

    pattern: str
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""
    delay: float = 0.0
    writes: dict[str, str] = Field(default_factory=dict)


class ScriptedCommandRunner(CommandRunner):
    """In-process runner that never spawns a shell.

    The first scripted entry whose pattern occurs in the command wins;
    unmatched commands succeed with empty output. Every invocation is
    recorded in ``calls`` as ``(command, cwd, env)``.

    Example:
        >>> runner = ScriptedCommandRunner()
        >>> runner.script("cargo doc", writes={"target/doc/index.html": "<html/>"})
    """

    def __init__(self) -> None:
        self._scripts: list[ScriptedCommand] = []
        self.calls: list[tuple[str, Path, dict[str, str]]] = []
        self._logger = logger.bind(component="scripted_runner")

    def script(
        self,
        pattern: str,
        exit_code: int = 0,
        stdout: str = "",
        stderr: str = "",
        delay: float = 0.0,
        writes: Optional[dict[str, str]] = None,
    ) -> None:
        """Register a canned response for commands containing ``pattern``."""
        self._scripts.append(
            ScriptedCommand(
                pattern=pattern,
                exit_code=exit_code,
                stdout=stdout,
                stderr=stderr,
                delay=delay,
                writes=dict(writes or {}),
            )
        )

    @property
    def commands(self) -> list[str]:
        """Command lines run so far, in order."""
        return [command for command, _, _ in self.calls]

    async def run(
        self,
        command: str,
        cwd: Path,
        env: dict[str, str],
    ) -> CommandResult:
        self.calls.append((command, Path(cwd), dict(env)))
        scripted = next((s for s in self._scripts if s.pattern in command), None)
        if scripted is None:
            return CommandResult(exit_code=0)

        if scripted.delay:
            await asyncio.sleep(scripted.delay)
        for rel_path, text in scripted.writes.items():
            target = Path(cwd) / rel_path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(text)

        self._logger.debug("scripted_command", command=command, exit_code=scripted.exit_code)
        return CommandResult(
            exit_code=scripted.exit_code,
            stdout=scripted.stdout,
            stderr=scripted.stderr,
            duration_seconds=scripted.delay,
        )
