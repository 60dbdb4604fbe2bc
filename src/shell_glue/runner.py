"""Run single commands and sequences of commands."""

from __future__ import annotations

from contextlib import ExitStack
from typing import Any, Optional

from shell_glue.command import CommandDescriptor, FunctionCommand, parse_args, parse_command
from shell_glue.helpers import change_env, chdir
from shell_glue.redirect import redirect_to
from shell_glue.spawn import SpawnHandle, spawn_command
from shell_glue.status import check_status, ignore_on_command_error


def run_command(command: CommandDescriptor) -> Any:
    """Run a parsed command in the foreground.

    A callable is called in the current process, under the current
    redirections, and its return value is returned. An external program is
    spawned and waited for; the result is whether it exited with 0, after
    the error policy has been applied.
    """
    if isinstance(command, FunctionCommand):
        return _call_function(command)
    handle = spawn_command(command)
    try:
        outcome = handle.wait()
    except BaseException:
        handle.detach()
        raise
    return check_status(outcome, command)


def _call_function(command: FunctionCommand) -> Any:
    options = command.options
    with ExitStack() as stack:
        for fd, name in ((0, "stdin"), (1, "stdout"), (2, "stderr")):
            stream = getattr(options, name)
            if stream is not None:
                stack.enter_context(redirect_to(fd, name, stream))
        if options.env is not None:
            stack.enter_context(change_env(**options.env))
        if options.cwd is not None:
            stack.enter_context(chdir(options.cwd))
        return command.func()


def run(*args: Any, **options: Any) -> Any:
    """
    Run a callable or an external program and wait for it.

    Usage:
        run("tr", "ab", "AB")            # -> True or False
        run(["tr", "ab", "AB"], stdin=f)
        run(lambda: 42)                 # -> 42

    Redirections, environment and working directory changes in effect
    apply to both callables and programs.
    """
    return run_command(parse_args(args, options))


def spawn(*args: Any, **options: Any) -> SpawnHandle:
    """
    Start a callable (in a forked child) or an external program without
    waiting for it. Use :func:`wait` or the handle's methods afterwards.
    """
    return spawn_command(parse_args(args, options))


def wait(handle: SpawnHandle, command: Optional[Any] = None) -> bool:
    """Wait for a spawned command and apply the error policy to its status."""
    return check_status(handle.wait(), command if command is not None else handle.command)


def run_seq(*command_lines: Any) -> Any:
    """Run each command line in order; return the result of the last one.

    With no command lines, returns True.
    """
    ret: Any = True
    for command_line in command_lines:
        ret = run_command(parse_command(command_line))
    return ret


def run_or(*command_lines: Any) -> Any:
    """
    Run command lines in order until one succeeds (returns a truthy value).

    Failures of all but the last command are ignored whatever the error
    policy; the last one is checked under the current policy. Returns False
    when no command line is given.
    """
    if not command_lines:
        return False

    *head, last = command_lines
    with ignore_on_command_error():
        for command_line in head:
            ret = run_command(parse_command(command_line))
            if ret:
                return ret
    return run_command(parse_command(last))


def run_and(*command_lines: Any) -> Any:
    """
    Run command lines in order while they succeed.

    Returns the first falsy result, or the result of the last command line.
    Returns True when no command line is given.
    """
    if not command_lines:
        return True

    *head, last = command_lines
    with ignore_on_command_error():
        for command_line in head:
            ret = run_command(parse_command(command_line))
            if not ret:
                return ret
    return run_command(parse_command(last))
