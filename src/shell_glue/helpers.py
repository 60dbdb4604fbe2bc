"""Scoped environment and working directory changes, and stream filters."""

from __future__ import annotations

import os
import sys
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, Union


@contextmanager
def change_env(**values: Optional[str]) -> Iterator[None]:
    """
    Change environment variables for the scope.

    A value of None removes the variable. The previous values are restored
    on exit. Spawned commands, forked callables included, see the changes.

    Usage:
        with change_env(LANG="C", PAGER=None):
            run("git", "log")
    """
    saved = {name: os.environ.get(name) for name in values}
    try:
        for name, value in values.items():
            _set_env(name, value)
        yield
    finally:
        for name, value in saved.items():
            _set_env(name, value)


def _set_env(name: str, value: Optional[str]) -> None:
    if value is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = value


@contextmanager
def chdir(path: Union[str, os.PathLike]) -> Iterator[None]:
    """Change the current directory for the scope."""
    previous = os.getcwd()
    os.chdir(path)
    try:
        yield
    finally:
        os.chdir(previous)


def filter_line(func: Callable[[str], Optional[str]]) -> bool:
    """
    Feed each line of ``sys.stdin`` to ``func``; write every non-empty
    result to ``sys.stdout``. Lines keep their newline.

    Usage:
        pipe(["dmesg"], lambda: filter_line(lambda l: l if "usb" in l else None))
    """
    for line in sys.stdin:
        ret = func(line)
        if ret:
            sys.stdout.write(ret)
    return True


def filter_char(func: Callable[[str], Optional[str]]) -> bool:
    """Same as :func:`filter_line`, one character at a time."""
    while True:
        ch = sys.stdin.read(1)
        if not ch:
            break
        ret = func(ch)
        if ret:
            sys.stdout.write(ret)
    return True
