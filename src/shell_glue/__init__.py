"""
Glue external programs and Python callables together like a shell.

Usage:
    from shell_glue import pipe, run, out_s, io_s, redirect_stdout_to

    # Run a program, get whether it exited with 0
    run("true")                                           # -> True

    # Pipelines, with Python callables as stages
    out_s(lambda: pipe(["echo", "-n", "abc"], ["tr", "ab", "AB"]))
                                                          # -> ("ABc", True)
    pipe(["ls"], lambda: filter_line(lambda l: l if l.endswith(".py\\n") else None))

    # Feed and capture
    io_s("abc", "tr", "ab", "AB")                         # -> ("ABc", True)

    # Redirections apply to Python code and to spawned programs alike
    with open("out.txt", "w") as f, redirect_stdout_to(f):
        print("hello")
        run("echo", "world")

    # Failures: ignored (default), logged, or raised
    with raise_on_command_error():
        run("false")                                      # CommandError

    # Fluent style
    (cmd("ls") | cmd("grep", ".py")).out_s()
"""

from __future__ import annotations

from shell_glue.capture import (
    TEMP_PREFIX,
    in_lines,
    in_s,
    io_s,
    io_ss,
    out_err_s,
    out_err_ss,
    out_lines,
    out_s,
    out_ss,
)
from shell_glue.command import (
    CommandDescriptor,
    ExternalCommand,
    FunctionCommand,
    SpawnOptions,
    describe,
    parse_command,
)
from shell_glue.errors import (
    CommandError,
    ExecutionError,
    PipeAllocationError,
    ShellGlueError,
    SpawnError,
)
from shell_glue.fluent import Cmd, cmd, run_async
from shell_glue.helpers import change_env, chdir, filter_char, filter_line
from shell_glue.pipeline import Process, pipe, popen
from shell_glue.redirect import (
    REDIRECTIONS,
    RedirectionStack,
    redirect_stderr_to,
    redirect_stderr_to_file,
    redirect_stdin_to,
    redirect_stdin_to_file,
    redirect_stdout_to,
    redirect_stdout_to_file,
    redirect_to,
)
from shell_glue.runner import run, run_and, run_or, run_seq, spawn, wait
from shell_glue.spawn import SpawnHandle, spawn_command
from shell_glue.status import (
    EXIT_EXCEPTION,
    IGNORE,
    RAISE,
    WARN,
    ErrorPolicy,
    ExitOutcome,
    current_policy,
    ignore_on_command_error,
    on_command_error,
    raise_on_command_error,
    warn_on_command_error,
)

__version__ = "0.1.0"

__all__ = [
    # Running
    "run",
    "spawn",
    "wait",
    "run_seq",
    "run_or",
    "run_and",
    "pipe",
    "popen",
    "Process",
    "SpawnHandle",
    "spawn_command",
    # Capture
    "out_s",
    "out_ss",
    "out_lines",
    "out_err_s",
    "out_err_ss",
    "in_s",
    "in_lines",
    "io_s",
    "io_ss",
    "TEMP_PREFIX",
    # Redirection
    "REDIRECTIONS",
    "RedirectionStack",
    "redirect_to",
    "redirect_stdin_to",
    "redirect_stdout_to",
    "redirect_stderr_to",
    "redirect_stdin_to_file",
    "redirect_stdout_to_file",
    "redirect_stderr_to_file",
    # Commands
    "CommandDescriptor",
    "ExternalCommand",
    "FunctionCommand",
    "SpawnOptions",
    "parse_command",
    "describe",
    "Cmd",
    "cmd",
    "run_async",
    # Status and policy
    "ExitOutcome",
    "ErrorPolicy",
    "IGNORE",
    "WARN",
    "RAISE",
    "EXIT_EXCEPTION",
    "current_policy",
    "on_command_error",
    "ignore_on_command_error",
    "warn_on_command_error",
    "raise_on_command_error",
    # Helpers
    "change_env",
    "chdir",
    "filter_line",
    "filter_char",
    # Errors
    "ShellGlueError",
    "SpawnError",
    "PipeAllocationError",
    "ExecutionError",
    "CommandError",
    "__version__",
]
