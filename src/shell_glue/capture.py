"""
Capture the output of, or feed input to, a callable or external program.

Usage:
    out_s("echo", "-n", "abc")                  # -> ("abc", True)
    out_s(lambda: sys.stdout.write("abc"))      # -> ("abc", 3)
    io_s("abc", "tr", "ab", "AB")               # -> ("ABc", True)
    in_lines(["b\\n", "a\\n"], "sort")          # -> True

Output and input are buffered in anonymous temporary files (unlinked as
soon as they are created), so callables run in the current process and
programs can use the same descriptor. Bytes that do not decode are kept as
lone surrogates (``errors="surrogateescape"``) and written back unchanged.
"""

from __future__ import annotations

import tempfile
from typing import IO, Any, Callable, Iterable, Optional

from shell_glue.command import CommandDescriptor, parse_args
from shell_glue.pipeline import popen
from shell_glue.redirect import redirect_stderr_to, redirect_stdin_to, redirect_stdout_to
from shell_glue.runner import run_command

TEMP_PREFIX = "shell-glue-"


def _temporary() -> IO[str]:
    return tempfile.TemporaryFile("w+", errors="surrogateescape", prefix=TEMP_PREFIX)


def _out_io(command: CommandDescriptor, read: Callable[[IO[str]], Any], with_stderr: bool = False):
    with _temporary() as tempf:
        with redirect_stdout_to(tempf):
            if with_stderr:
                with redirect_stderr_to(tempf):
                    ret = run_command(command)
            else:
                ret = run_command(command)
        tempf.seek(0)
        return read(tempf), ret


def out_s(*args: Any, **options: Any) -> tuple[str, Any]:
    """
    Run a callable or program with stdout captured.

    Returns:
        ``(output, result)``, where result is the callable's return value or
        whether the program exited with 0.
    """
    return _out_io(parse_args(args, options), lambda f: f.read())


def out_ss(*args: Any, **options: Any) -> tuple[str, Any]:
    """Same as :func:`out_s` with trailing whitespace stripped from the output."""
    output, ret = out_s(*args, **options)
    return output.rstrip(), ret


def out_lines(*args: Any, callback: Optional[Callable[[str], Any]] = None, **options: Any):
    """
    Run a callable or program and collect its output as lines.

    Without ``callback``, returns ``(lines, result)``; lines keep their
    newline. With ``callback``, the command runs concurrently (a callable in
    a forked child), each line is passed to ``callback`` as soon as it is
    read, and the exit status is returned after the error policy has been
    applied.
    """
    command = parse_args(args, options)
    if callback is None:
        return _out_io(command, lambda f: f.readlines())

    with popen(command, stdout=True) as process:
        for line in process.stdout:
            callback(line)
        return process.check()


def out_err_s(*args: Any, **options: Any) -> tuple[str, Any]:
    """Same as :func:`out_s`, capturing stderr into the same string."""
    return _out_io(parse_args(args, options), lambda f: f.read(), with_stderr=True)


def out_err_ss(*args: Any, **options: Any) -> tuple[str, Any]:
    """Same as :func:`out_err_s` with trailing whitespace stripped."""
    output, ret = out_err_s(*args, **options)
    return output.rstrip(), ret


def _in_io(command: CommandDescriptor, write: Callable[[IO[str]], Any]) -> Any:
    with _temporary() as tempf:
        write(tempf)
        tempf.flush()
        tempf.seek(0)
        with redirect_stdin_to(tempf):
            return run_command(command)


def in_s(text: str, *args: Any, **options: Any) -> Any:
    """
    Run a callable or program with ``text`` as its stdin.

    Returns the callable's return value or whether the program exited with 0.
    """
    return _in_io(parse_args(args, options), lambda f: f.write(text))


def in_lines(lines: Iterable[str], *args: Any, **options: Any) -> Any:
    """Same as :func:`in_s`; input is given as lines, written as they are."""
    return _in_io(parse_args(args, options), lambda f: f.writelines(lines))


def io_s(text: str, *args: Any, **options: Any) -> tuple[str, Any]:
    """Feed ``text`` to stdin and capture stdout; returns like :func:`out_s`."""
    command = parse_args(args, options)
    return in_s(text, lambda: out_s(command))


def io_ss(text: str, *args: Any, **options: Any) -> tuple[str, Any]:
    """Same as :func:`io_s` with trailing whitespace stripped from the output."""
    output, ret = io_s(text, *args, **options)
    return output.rstrip(), ret
