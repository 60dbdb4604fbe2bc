"""
Fluent command objects.

Usage:
    from shell_glue import cmd

    cmd("ls", "-la").run()                                  # -> True
    (cmd("ls") | cmd("grep", ".py") | cmd("wc", "-l")).out_s()
    (cmd("ls") | count_lines).run()                         # callable last stage
    await cmd("sleep", "1").run_async()
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

from shell_glue.capture import in_s, out_lines, out_s
from shell_glue.command import CommandDescriptor, parse_args
from shell_glue.pipeline import Process, pipe, popen
from shell_glue.runner import run


class Cmd:
    """
    A command or pipeline that can be executed or piped to other commands.

    Examples:
        cmd("echo", "hello").run()
        (cmd("cat", "file.txt") | cmd("grep", "pattern")).run()
        (cmd("cat", "file.txt") | (lambda: len(sys.stdin.read()))).run()
    """

    def __init__(self, *args: Any, input: Optional[str] = None, **options: Any):
        """
        Create a command.

        Args:
            *args: Program and arguments, or a single callable.
            input: Optional string fed to the first stage's stdin.
            **options: Spawn options (stdin, stdout, stderr, close,
                       close_others, cwd, env).
        """
        self._pipeline: list[CommandDescriptor] = [parse_args(args, options)]
        self._input = input

    @classmethod
    def _from_pipeline(cls, pipeline: list[CommandDescriptor], input: Optional[str] = None) -> "Cmd":
        result = cls.__new__(cls)
        result._pipeline = list(pipeline)
        result._input = input
        return result

    @property
    def commands(self) -> tuple:
        return tuple(self._pipeline)

    def __or__(self, other: Any) -> "Cmd":
        """
        Pipe this command's stdout to another command's stdin.

        Usage: cmd("ls") | cmd("grep", "foo")
        """
        if callable(other) and not isinstance(other, Cmd):
            other = Cmd(other)
        if not isinstance(other, Cmd):
            return NotImplemented
        return Cmd._from_pipeline(self._pipeline + other._pipeline, self._input)

    def __ror__(self, other: Any) -> "Cmd":
        if callable(other):
            return Cmd(other) | self
        return NotImplemented

    def _execute(self, action):
        if self._input is None:
            return action()
        return in_s(self._input, action)

    def run(self) -> Any:
        """
        Execute the command (or pipeline) and wait for it.

        Returns:
            The last stage's return value if it is a callable, otherwise
            whether the last program exited with 0.
        """
        return self._execute(lambda: pipe(*self._pipeline))

    def out_s(self) -> tuple[str, Any]:
        """Execute and capture stdout; returns ``(output, result)``."""
        return self._execute(lambda: out_s(lambda: pipe(*self._pipeline)))

    def out_lines(self) -> tuple[list, Any]:
        """Execute and capture stdout as lines; returns ``(lines, result)``."""
        return self._execute(lambda: out_lines(lambda: pipe(*self._pipeline)))

    async def run_async(self) -> Any:
        """
        Execute the command (or pipeline) without blocking the event loop.

        The command runs in a worker thread that sees the caller's
        redirections and error policy.
        """
        return await asyncio.to_thread(self.run)

    def stream(self) -> Process:
        """
        Start the command/pipeline and return a Process for reading its output.

        Example:
            with (cmd("ls") | cmd("sort")).stream() as p:
                for line in p.iter_lines():
                    print(line)
        """
        if len(self._pipeline) == 1 and self._input is None:
            return popen(self._pipeline[0], stdout=True)
        return popen(self.run, stdout=True)

    def with_input(self, text: str) -> "Cmd":
        """Return a new Cmd/pipeline with ``text`` as the first stage's stdin."""
        return Cmd._from_pipeline(self._pipeline, text)

    def with_env(self, **env: Optional[str]) -> "Cmd":
        """Return a new Cmd/pipeline with additional environment variables for ALL stages."""
        return Cmd._from_pipeline(
            [c.with_options(env={**(c.options.env or {}), **env}) for c in self._pipeline],
            self._input,
        )

    def with_cwd(self, cwd: str) -> "Cmd":
        """Return a new Cmd/pipeline with a different working directory for ALL stages."""
        return Cmd._from_pipeline(
            [c.with_options(cwd=cwd) for c in self._pipeline],
            self._input,
        )

    def __repr__(self) -> str:
        if len(self._pipeline) == 1:
            return f"Cmd({self._pipeline[0]})"
        return f"Pipeline({' | '.join(str(c) for c in self._pipeline)})"


cmd = Cmd


async def run_async(*args: Any, **options: Any) -> Any:
    """
    Run a command in a worker thread and await its result.

    Usage:
        ok = await run_async("make", "-j4")
    """
    return await asyncio.to_thread(run, *args, **options)
