"""
Command descriptors: the normalized form of "what to run".

A command line given by the caller is one of::

    ["tr", "ab", "AB", {1: f}]   # program, arguments and options
    ["tr", "ab", "AB"]            # program and arguments
    "cat"                         # program without arguments
    [func]                        # callable in a list (may carry options)
    func                          # callable

and is turned once, by :func:`parse_command`, into either an
:class:`ExternalCommand` or a :class:`FunctionCommand`.
"""

from __future__ import annotations

import os
import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any, Callable, ClassVar, Optional, Union

from shell_glue.redirect import StreamHandle

_STD_NAMES = {0: "stdin", 1: "stdout", 2: "stderr"}
_OPTION_KEYS = ("stdin", "stdout", "stderr", "close", "close_others", "cwd", "env")


@dataclass(frozen=True)
class SpawnOptions:
    """Per-command spawn options, layered on top of the redirection stack."""
    stdin: Optional[StreamHandle] = None
    stdout: Optional[StreamHandle] = None
    stderr: Optional[StreamHandle] = None
    fds: Mapping[int, StreamHandle] = field(default_factory=dict)
    close: tuple = ()
    close_others: bool = True
    cwd: Optional[Union[str, os.PathLike]] = None
    env: Optional[Mapping[str, str]] = None

    @classmethod
    def from_mapping(cls, mapping: Optional[Mapping] = None, **kwargs: Any) -> "SpawnOptions":
        """
        Build options from an options mapping and keyword options.

        Integer keys are descriptor overrides (0, 1 and 2 map to stdin,
        stdout and stderr). String keys name the fields of this class.
        Keyword options win over the mapping.
        """
        values: dict[str, Any] = {}
        fds: dict[int, StreamHandle] = {}
        for key, value in [*(mapping or {}).items(), *kwargs.items()]:
            if isinstance(key, int) and not isinstance(key, bool):
                if key < 0:
                    raise ValueError(f"Invalid file descriptor: {key}")
                if key in _STD_NAMES:
                    values[_STD_NAMES[key]] = value
                else:
                    fds[key] = value
            elif key == "fds":
                fds.update(value)
            elif key in _OPTION_KEYS:
                values[key] = value
            else:
                raise TypeError(f"Unknown spawn option: {key!r}")
        if "close" in values:
            values["close"] = tuple(values["close"] or ())
        return cls(fds=fds, **values)

    def redirections(self) -> dict[int, StreamHandle]:
        """Descriptor overrides carried by these options."""
        mapping = dict(self.fds)
        for fd, name in _STD_NAMES.items():
            stream = getattr(self, name)
            if stream is not None:
                mapping[fd] = stream
        return mapping

    def merged_with(self, base: Mapping[int, StreamHandle]) -> dict[int, StreamHandle]:
        """Layer these overrides over ``base`` (usually the materialized stack)."""
        mapping = dict(base)
        mapping.update(self.redirections())
        return mapping

    def replace(self, **changes: Any) -> "SpawnOptions":
        return replace(self, **changes)


@dataclass(frozen=True)
class ExternalCommand:
    """An external program and its arguments."""
    argv: tuple
    options: SpawnOptions = field(default_factory=SpawnOptions)

    is_callable: ClassVar[bool] = False

    def with_options(self, **changes: Any) -> "ExternalCommand":
        return replace(self, options=self.options.replace(**changes))

    def __str__(self) -> str:
        return shlex.join(self.argv)


@dataclass(frozen=True)
class FunctionCommand:
    """A zero-argument Python callable run as a command."""
    func: Callable[[], Any]
    options: SpawnOptions = field(default_factory=SpawnOptions)

    is_callable: ClassVar[bool] = True

    def with_options(self, **changes: Any) -> "FunctionCommand":
        return replace(self, options=self.options.replace(**changes))

    def __str__(self) -> str:
        name = getattr(self.func, "__qualname__", None) or repr(self.func)
        return f"{name}()"


CommandDescriptor = Union[ExternalCommand, FunctionCommand]


def _argument(arg: Any) -> str:
    if isinstance(arg, str):
        return arg
    if isinstance(arg, (bytes, os.PathLike)):
        return os.fsdecode(arg)
    raise TypeError(f"Command arguments must be strings, got {type(arg).__name__}: {arg!r}")


def parse_command(command_line: Any, **options: Any) -> CommandDescriptor:
    """Normalize a command line (see module docstring) into a descriptor."""
    if isinstance(command_line, (ExternalCommand, FunctionCommand)):
        if not options:
            return command_line
        merged = SpawnOptions.from_mapping(
            {**_as_mapping(command_line.options), **options}
        )
        return replace(command_line, options=merged)

    if isinstance(command_line, (str, bytes, os.PathLike)):
        items: list = [command_line]
    elif callable(command_line):
        items = [command_line]
    elif isinstance(command_line, (list, tuple)):
        items = list(command_line)
    else:
        raise TypeError(f"Invalid command line: {command_line!r}")

    mapping = items.pop() if items and isinstance(items[-1], Mapping) else None
    if not items:
        raise ValueError("No command given")

    spawn_options = SpawnOptions.from_mapping(mapping, **options)
    if len(items) == 1 and callable(items[0]) and not isinstance(items[0], (str, bytes)):
        return FunctionCommand(items[0], spawn_options)
    return ExternalCommand(tuple(_argument(arg) for arg in items), spawn_options)


def parse_args(args: tuple, options: Mapping[str, Any]) -> CommandDescriptor:
    """Parse the ``*args, **options`` of ``run``-style entry points.

    ``run("tr", "ab", "AB")`` and ``run(["tr", "ab", "AB"])`` are the same.
    """
    if len(args) == 1 and isinstance(args[0], (list, tuple, ExternalCommand, FunctionCommand)):
        return parse_command(args[0], **options)
    if not args:
        raise ValueError("No command given")
    return parse_command(list(args), **options)


def _as_mapping(options: SpawnOptions) -> dict:
    mapping: dict[Any, Any] = dict(options.redirections())
    mapping.update(
        close=options.close,
        close_others=options.close_others,
        cwd=options.cwd,
        env=options.env,
    )
    return mapping


def describe(command: Any) -> str:
    """Human readable command line, used in logs and error messages."""
    if isinstance(command, (ExternalCommand, FunctionCommand)):
        return str(command)
    if isinstance(command, (list, tuple)) and command and all(
        isinstance(c, (ExternalCommand, FunctionCommand)) for c in command
    ):
        return " | ".join(str(c) for c in command)
    try:
        return str(parse_command(command))
    except (TypeError, ValueError):
        return repr(command)
