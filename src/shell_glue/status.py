"""
Exit statuses and the command error policy.

The policy decides what happens when a command fails:

    IGNORE  the failure is reported only as a ``False`` result (default)
    WARN    a warning is logged and ``False`` is returned
    RAISE   :class:`~shell_glue.errors.CommandError` is raised

Policies are scoped:

    with raise_on_command_error():
        run("make")               # raises on failure
        with ignore_on_command_error():
            run("false")          # just returns False
"""

from __future__ import annotations

import contextvars
import enum
import logging
import signal
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, Optional

from shell_glue.errors import CommandError, ExecutionError

LOGGER = logging.getLogger("shell_glue")

# Exit status of an isolated callable that raised instead of returning.
EXIT_EXCEPTION = 70


class ErrorPolicy(enum.Enum):
    IGNORE = "ignore"
    WARN = "warn"
    RAISE = "raise"


IGNORE = ErrorPolicy.IGNORE
WARN = ErrorPolicy.WARN
RAISE = ErrorPolicy.RAISE

_on_command_error: contextvars.ContextVar[ErrorPolicy] = contextvars.ContextVar(
    "shell_glue_on_command_error", default=IGNORE
)


@dataclass(frozen=True)
class ExitOutcome:
    """Terminal status of one spawned command.

    ``returncode`` follows the ``subprocess`` convention: a negative value
    means the process was killed by that signal.
    """
    returncode: int
    pid: Optional[int] = None
    from_callable: bool = False

    @property
    def ok(self) -> bool:
        """True if the command exited with code 0."""
        return self.returncode == 0

    @property
    def exited(self) -> bool:
        return self.returncode >= 0

    @property
    def exit_code(self) -> Optional[int]:
        return self.returncode if self.exited else None

    @property
    def signal(self) -> Optional[int]:
        return -self.returncode if self.returncode < 0 else None

    @property
    def raised(self) -> bool:
        """True if an isolated callable died from an exception."""
        return self.from_callable and self.returncode == EXIT_EXCEPTION

    @property
    def reason(self) -> str:
        if self.exited:
            if self.raised:
                return "raised an exception"
            return f"exited with {self.returncode}"
        try:
            name = signal.Signals(self.signal).name
        except ValueError:
            name = str(self.signal)
        return f"killed by {name}"

    def __bool__(self) -> bool:
        return self.ok


def current_policy() -> ErrorPolicy:
    return _on_command_error.get()


@contextmanager
def on_command_error(policy) -> Iterator[ErrorPolicy]:
    """Use ``policy`` for the scope, restoring the enclosing one afterwards."""
    policy = ErrorPolicy(policy)
    token = _on_command_error.set(policy)
    try:
        yield policy
    finally:
        _on_command_error.reset(token)


def ignore_on_command_error():
    """Failed commands just return ``False`` inside the scope."""
    return on_command_error(IGNORE)


def warn_on_command_error():
    """Failed commands log a warning inside the scope."""
    return on_command_error(WARN)


def raise_on_command_error():
    """Failed commands raise ``CommandError`` inside the scope."""
    return on_command_error(RAISE)


def check_status(outcome: ExitOutcome, command: Any) -> bool:
    """Apply the current error policy to ``outcome`` of ``command``."""
    if outcome.ok:
        return True

    policy = _on_command_error.get()
    if policy is IGNORE:
        return False

    error_class = ExecutionError if outcome.raised else CommandError
    err = error_class(command, outcome)
    if policy is RAISE:
        raise err
    LOGGER.warning("Command Error: %s", err)
    return False
