"""Exceptions raised by shell-glue."""

from __future__ import annotations

from typing import Any

from shell_glue.command import describe


class ShellGlueError(Exception):
    """Base class for all shell-glue errors."""


class SpawnError(ShellGlueError):
    """Raised when a command cannot be launched.

    The underlying ``OSError`` (missing program, permission denied, fork
    failure, ...) is chained as ``__cause__``.
    """
    def __init__(self, command: Any, reason: str):
        self.command = command
        self.cmdline = describe(command)
        self.reason = reason
        super().__init__(f"cannot spawn {self.cmdline}: {reason}")


class PipeAllocationError(ShellGlueError):
    """Raised when the OS refuses to create a pipe."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"cannot allocate pipe: {reason}")


class CommandError(ShellGlueError):
    """Raised when a command fails under the ``RAISE`` error policy."""
    def __init__(self, command: Any, status):
        self.command = command
        self.cmdline = describe(command)
        self.status = status
        super().__init__(f"{self.cmdline}: {status.reason}")

    @property
    def returncode(self) -> int:
        return self.status.returncode


class ExecutionError(CommandError):
    """Raised when a callable run in an isolated child raised an exception.

    The exception object itself stays in the child; its traceback was
    written to the child's stderr.
    """
