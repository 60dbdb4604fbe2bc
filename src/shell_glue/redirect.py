"""
Scoped I/O redirection.

A redirection applies to two audiences at once: in-process Python code,
through ``sys.stdin``/``sys.stdout``/``sys.stderr``, and every command
spawned inside the scope, through the redirection stack consulted by
:func:`shell_glue.spawn.spawn_command`.

Usage:
    with open("log.txt", "w") as f, redirect_stdout_to(f):
        print("from python")        # goes to log.txt
        run("echo", "from echo")    # so does this
"""

from __future__ import annotations

import contextvars
import io
import logging
import sys
from contextlib import contextmanager
from typing import IO, Iterator, Optional, Union

StreamHandle = Union[int, IO]

LOGGER = logging.getLogger("shell_glue")

_SYS_STREAMS = {"stdin": 0, "stdout": 1, "stderr": 2}


class RedirectionStack:
    """Ordered ``(fd, stream)`` overrides in effect for spawned commands.

    Entries are kept as an immutable tuple inside a context variable, so
    every thread and asyncio task has its own stack and a spawn always reads
    a consistent snapshot. Later entries for the same fd shadow earlier
    ones.
    """

    def __init__(self, name: str = "shell_glue_redirections"):
        self._entries: contextvars.ContextVar[tuple] = contextvars.ContextVar(name, default=())

    def push(self, fd: int, stream: StreamHandle) -> None:
        self._entries.set(self._entries.get() + ((fd, stream),))

    def pop(self) -> tuple[int, StreamHandle]:
        entries = self._entries.get()
        if not entries:
            raise IndexError("pop from empty redirection stack")
        self._entries.set(entries[:-1])
        return entries[-1]

    def snapshot(self) -> tuple:
        return self._entries.get()

    def materialize(self) -> dict[int, StreamHandle]:
        """Return the effective fd -> stream mapping (last entry wins)."""
        return dict(self._entries.get())

    def __len__(self) -> int:
        return len(self._entries.get())

    def __repr__(self) -> str:
        return f"RedirectionStack({list(self._entries.get())!r})"


REDIRECTIONS = RedirectionStack()


def fileno(stream: StreamHandle) -> int:
    """Return the OS descriptor behind ``stream``."""
    if isinstance(stream, int):
        return stream
    return stream.fileno()


def flush_streams(streams=()) -> None:
    """Flush Python-level buffers before a child starts writing to the same fds."""
    for stream in (sys.stdout, sys.stderr, *streams):
        if isinstance(stream, int) or stream is None:
            continue
        flush = getattr(stream, "flush", None)
        if flush is None or getattr(stream, "closed", False):
            continue
        try:
            flush()
        except (OSError, ValueError) as exc:
            LOGGER.debug("Could not flush %r: %s", stream, exc)


@contextmanager
def _rebind_sys(var_name: str, stream: StreamHandle) -> Iterator[IO]:
    if var_name not in _SYS_STREAMS:
        raise ValueError(f"Invalid stream name: {var_name!r}")

    wrapper = None
    if isinstance(stream, int):
        # A bare descriptor needs a file object for Python code to use.
        mode = "r" if var_name == "stdin" else "w"
        wrapper = stream = io.open(stream, mode, closefd=False)

    original = getattr(sys, var_name)
    setattr(sys, var_name, stream)
    try:
        yield stream
    finally:
        if var_name != "stdin":
            flush_streams([stream])
        setattr(sys, var_name, original)
        if wrapper is not None:
            wrapper.close()


@contextmanager
def redirect_to(fd: Optional[int], var_name: Optional[str], stream: StreamHandle) -> Iterator[StreamHandle]:
    """
    Redirect ``fd`` for spawned commands and ``sys.<var_name>`` for Python code.

    Either part may be ``None`` to skip it. Both are restored when the scope
    exits, whether normally or by an exception.
    """
    if fd is not None:
        REDIRECTIONS.push(fd, stream)
    try:
        if var_name:
            with _rebind_sys(var_name, stream):
                yield stream
        else:
            yield stream
    finally:
        if fd is not None:
            REDIRECTIONS.pop()


def redirect_stdin_to(stream: StreamHandle):
    """Redirect fd 0 and ``sys.stdin`` to ``stream`` for the scope."""
    return redirect_to(0, "stdin", stream)


def redirect_stdout_to(stream: StreamHandle):
    """Redirect fd 1 and ``sys.stdout`` to ``stream`` for the scope."""
    return redirect_to(1, "stdout", stream)


def redirect_stderr_to(stream: StreamHandle):
    """Redirect fd 2 and ``sys.stderr`` to ``stream`` for the scope."""
    return redirect_to(2, "stderr", stream)


@contextmanager
def redirect_stdin_to_file(file, mode: str = "r", **kwargs) -> Iterator[IO]:
    """Open ``file`` (same arguments as ``open()``) and use it as stdin."""
    with open(file, mode, **kwargs) as f, redirect_stdin_to(f):
        yield f


@contextmanager
def redirect_stdout_to_file(file, mode: str = "w", **kwargs) -> Iterator[IO]:
    """Open ``file`` for writing and use it as stdout."""
    with open(file, mode, **kwargs) as f, redirect_stdout_to(f):
        yield f


@contextmanager
def redirect_stderr_to_file(file, mode: str = "w", **kwargs) -> Iterator[IO]:
    """Open ``file`` for writing and use it as stderr."""
    with open(file, mode, **kwargs) as f, redirect_stderr_to(f):
        yield f
