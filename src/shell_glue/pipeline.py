"""
Pipelines: connect the stdout of each stage to the stdin of the next.

Usage:
    pipe(["echo", "-n", "abc"], ["tr", "ab", "AB"])       # -> True
    out_s(lambda: pipe(["ls"], ["grep", ".py"]))           # -> ("...", True)
    pipe(["ls"], lambda: sum(1 for _ in sys.stdin))        # -> line count

Every stage but the last is detached: its status is reaped in the background
and never reported. The pipeline's result is the last stage's, as in a
shell without ``pipefail``.
"""

from __future__ import annotations

import os
from typing import Any, Iterator, Optional

from shell_glue.command import CommandDescriptor, parse_args, parse_command
from shell_glue.errors import PipeAllocationError
from shell_glue.redirect import redirect_stdin_to
from shell_glue.runner import run_command
from shell_glue.spawn import SpawnHandle, spawn_command
from shell_glue.status import ExitOutcome, check_status


def _open_pipe():
    """Return the ``(read_end, write_end)`` file objects of a new pipe."""
    try:
        read_fd, write_fd = os.pipe()
    except OSError as exc:
        raise PipeAllocationError(exc.strerror or str(exc)) from exc
    return (
        open(read_fd, "r", errors="surrogateescape"),
        open(write_fd, "w", errors="surrogateescape"),
    )


def _close(stream) -> None:
    """Close ``stream`` if it is open; return None for reassignment."""
    if stream is not None and not stream.closed:
        stream.close()
    return None


def _close_all(*streams) -> None:
    for stream in streams:
        _close(stream)


def pipe(*command_lines: Any) -> Any:
    """
    Run the command lines as a pipeline.

    Each command line is a program with arguments (and an optional options
    mapping) in a list, a program name, or a callable (optionally in a
    list). All callables run in forked children, except a callable in the
    last position, which runs in the current process with stdin connected
    to the pipeline.

    Returns the last callable's return value, or whether the last external
    program exited with 0 (after the error policy has been applied).
    """
    if not command_lines:
        raise ValueError("No command given")
    commands = [parse_command(command_line) for command_line in command_lines]
    if len(commands) == 1:
        return run_command(commands[0])
    return _run_pipeline(commands)


def _run_pipeline(commands: list[CommandDescriptor]) -> Any:
    *upstream, last = commands
    read_end = write_end = downstream_write = last_read = None
    last_handle: Optional[SpawnHandle] = None

    try:
        # Stages are launched right to left, so every reader exists before
        # its writer starts.
        read_end, write_end = _open_pipe()
        if last.is_callable:
            last_read, read_end = read_end, None
            keep = (last_read,)
        else:
            last_handle = spawn_command(last, stdin=read_end)
            read_end = _close(read_end)
            keep = ()

        # Forked stages inherit every descriptor the parent holds; the ones
        # listed in close= must not survive there or EOF never arrives.
        for command in reversed(upstream[1:]):
            downstream_write, write_end = write_end, None
            read_end, write_end = _open_pipe()
            handle = spawn_command(
                command,
                stdin=read_end,
                stdout=downstream_write,
                close=command.options.close + keep + (write_end,),
            )
            handle.detach()
            read_end = _close(read_end)
            downstream_write = _close(downstream_write)

        handle = spawn_command(
            upstream[0],
            stdout=write_end,
            close=upstream[0].options.close + keep,
        )
        handle.detach()
        write_end = _close(write_end)

        if last_handle is None:
            with redirect_stdin_to(last_read):
                return run_command(last)
        return check_status(last_handle.wait(), tuple(commands))
    except BaseException:
        if last_handle is not None and last_handle.outcome is None:
            last_handle.detach()
        raise
    finally:
        _close_all(read_end, write_end, downstream_write, last_read)


class Process:
    """
    A spawned command with some standard streams connected to pipes.

    The parent ends of the pipes are ``stdin`` (writable), ``stdout`` and
    ``stderr`` (readable); each is None when not requested.

    Example:
        with popen("sort", stdin=True, stdout=True) as p:
            p.stdin.write("b\\na\\n")
            p.stdin.close()
            lines = list(p.iter_lines())
            p.wait()
    """

    def __init__(self, handle: SpawnHandle, stdin=None, stdout=None, stderr=None):
        self.handle = handle
        self.stdin = stdin
        self.stdout = stdout
        self.stderr = stderr
        self._closed = False

    @property
    def pid(self) -> int:
        return self.handle.pid

    @property
    def command(self) -> CommandDescriptor:
        return self.handle.command

    @property
    def outcome(self) -> Optional[ExitOutcome]:
        return self.handle.outcome

    def wait(self) -> ExitOutcome:
        """Close our stdin end (sending EOF) and wait for the command."""
        self.stdin = _close(self.stdin)
        return self.handle.wait()

    def check(self) -> bool:
        """Wait, then apply the error policy to the outcome."""
        return check_status(self.wait(), self.command)

    def iter_lines(self) -> Iterator[str]:
        """
        Iterate over stdout line by line.

        Yields:
            Lines without trailing newline.
        """
        if self.stdout is None:
            raise ValueError("stdout is not connected to a pipe")
        for line in self.stdout:
            yield line[:-1] if line.endswith("\n") else line

    def read(self) -> str:
        """Read all remaining output."""
        if self.stdout is None:
            raise ValueError("stdout is not connected to a pipe")
        return self.stdout.read()

    def kill(self):
        """Send SIGKILL to the command."""
        self.handle.kill()

    def terminate(self):
        """Send SIGTERM to the command."""
        self.handle.terminate()

    def close(self):
        """Close our pipe ends; reap the command in the background if needed."""
        if self._closed:
            return
        self._closed = True

        self.stdin = _close(self.stdin)
        self.stdout = _close(self.stdout)
        self.stderr = _close(self.stderr)
        if self.handle.outcome is None:
            self.handle.detach()

    def __enter__(self) -> "Process":
        return self

    def __exit__(self, *args):
        self.close()

    def __repr__(self) -> str:
        return f"Process({self.command}, pid={self.pid})"


def popen(*args: Any, stdin: bool = False, stdout: bool = False, stderr: Any = False, **options: Any) -> Process:
    """
    Spawn a callable (forked) or external program with pipes attached.

    Any true ``stdin``/``stdout``/``stderr`` connects that stream to a new
    pipe. ``stderr="stdout"`` sends stderr into the stdout pipe.

    Returns:
        A :class:`Process`; use it as a context manager to close the pipes
        and reap the command.
    """
    command = parse_args(args, options)
    if stderr == "stdout" and not stdout:
        raise ValueError("stderr='stdout' requires stdout=True")

    parent_ends: list = [None, None, None]
    child_ends: list = []
    overrides: dict[str, Any] = {}
    close = command.options.close
    try:
        if stdin:
            read_end, parent_ends[0] = _open_pipe()
            child_ends.append(read_end)
            overrides["stdin"] = read_end
        if stdout:
            parent_ends[1], write_end = _open_pipe()
            child_ends.append(write_end)
            overrides["stdout"] = write_end
        if stderr == "stdout":
            overrides["stderr"] = overrides["stdout"]
        elif stderr:
            parent_ends[2], write_end = _open_pipe()
            child_ends.append(write_end)
            overrides["stderr"] = write_end

        close += tuple(end for end in parent_ends if end is not None)
        handle = spawn_command(command, close=close, **overrides)
    except BaseException:
        _close_all(*parent_ends)
        raise
    finally:
        _close_all(*child_ends)

    return Process(handle, *parent_ends)
