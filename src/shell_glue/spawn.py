"""
Launch one command as a concurrently running unit.

External programs are started with :class:`subprocess.Popen`. Python
callables run in a forked child so that redirections, environment changes
and any other state they mutate stay inside that child; the parent only sees
what comes through the pipes and the exit status.
"""

from __future__ import annotations

import fcntl
import os
import signal
import subprocess
import sys
import threading
import traceback
from contextlib import ExitStack
from typing import Any, Optional

from shell_glue.command import CommandDescriptor, ExternalCommand, SpawnOptions
from shell_glue.errors import SpawnError
from shell_glue.redirect import REDIRECTIONS, fileno, flush_streams, redirect_to
from shell_glue.status import EXIT_EXCEPTION, LOGGER, ExitOutcome

_STD_NAMES = ((0, "stdin"), (1, "stdout"), (2, "stderr"))


class SpawnHandle:
    """
    Handle on a spawned command.

    The terminal status is resolved at most once: :meth:`wait`,
    :meth:`poll` and the background reaper started by :meth:`detach` all
    share the cached :class:`ExitOutcome`.
    """

    def __init__(
        self,
        command: CommandDescriptor,
        process: Optional[subprocess.Popen] = None,
        pid: Optional[int] = None,
    ):
        self.command = command
        self._process = process
        self._pid = process.pid if process is not None else pid
        self._outcome: Optional[ExitOutcome] = None
        self._lock = threading.Lock()
        self._reaper: Optional[threading.Thread] = None

    @property
    def pid(self) -> int:
        return self._pid

    @property
    def outcome(self) -> Optional[ExitOutcome]:
        """The exit outcome, or None while the command is still running."""
        return self._outcome

    @property
    def detached(self) -> bool:
        return self._reaper is not None

    def _resolve(self, returncode: int) -> ExitOutcome:
        self._outcome = ExitOutcome(
            returncode,
            pid=self._pid,
            from_callable=self._process is None,
        )
        LOGGER.debug("Reaped %s (pid %d): %s", self.command, self._pid, self._outcome.reason)
        return self._outcome

    def wait(self) -> ExitOutcome:
        """Block until the command finishes and return its outcome."""
        with self._lock:
            if self._outcome is None:
                if self._process is not None:
                    self._resolve(self._process.wait())
                else:
                    _, status = os.waitpid(self._pid, 0)
                    self._resolve(os.waitstatus_to_exitcode(status))
        return self._outcome

    def poll(self) -> Optional[ExitOutcome]:
        """Return the outcome if the command has finished, without blocking."""
        if self._outcome is not None:
            return self._outcome
        if not self._lock.acquire(blocking=False):
            return None  # Another thread is waiting on it
        try:
            if self._outcome is None:
                if self._process is not None:
                    returncode = self._process.poll()
                    if returncode is not None:
                        self._resolve(returncode)
                else:
                    pid, status = os.waitpid(self._pid, os.WNOHANG)
                    if pid != 0:
                        self._resolve(os.waitstatus_to_exitcode(status))
        finally:
            self._lock.release()
        return self._outcome

    def detach(self) -> None:
        """Reap the command in the background, discarding its status."""
        if self._outcome is not None or self._reaper is not None:
            return
        self._reaper = threading.Thread(
            target=self._reap,
            name=f"shell-glue-reaper-{self._pid}",
            daemon=True,
        )
        self._reaper.start()
        LOGGER.debug("Detached %s (pid %d)", self.command, self._pid)

    def _reap(self) -> None:
        try:
            self.wait()
        except OSError as exc:
            LOGGER.debug("Could not reap pid %d: %s", self._pid, exc)

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the background reaper started by :meth:`detach`."""
        if self._reaper is not None:
            self._reaper.join(timeout)

    def send_signal(self, sig: int) -> None:
        if self._outcome is not None:
            return
        try:
            if self._process is not None:
                self._process.send_signal(sig)
            else:
                os.kill(self._pid, sig)
        except ProcessLookupError:
            pass  # Already dead

    def kill(self) -> None:
        """Send SIGKILL to the command."""
        self.send_signal(signal.SIGKILL)

    def terminate(self) -> None:
        """Send SIGTERM to the command."""
        self.send_signal(signal.SIGTERM)

    def __repr__(self) -> str:
        state = self._outcome.reason if self._outcome is not None else "running"
        return f"SpawnHandle({self.command}, pid={self._pid}, {state})"


def spawn_command(command: CommandDescriptor, **overrides: Any) -> SpawnHandle:
    """
    Launch ``command`` and return its handle without waiting.

    ``overrides`` (``stdin=``, ``stdout=``, ``close=``, ...) replace the
    matching fields of the command's own options. Descriptor overrides are
    layered over the current redirection stack.

    Raises:
        SpawnError: the program could not be started, or the fork failed.
    """
    options = command.options.replace(**overrides) if overrides else command.options
    if isinstance(command, ExternalCommand):
        return _spawn_external(command, options)
    return _spawn_function(command, options)


def _descriptor_installer(moved: dict[int, int]):
    """Return a ``preexec_fn`` that dups each source onto its target fd."""

    def install() -> None:
        for target, source in moved.items():
            os.dup2(source, target)

    return install


def _hold_free_descriptors(limit: int, held: list[int]) -> None:
    """Occupy every free descriptor below ``limit``, appending each to ``held``.

    Popen's own status pipe then lands above every target, where
    installing the targets in the child cannot clobber it.
    """
    while True:
        fd = os.open(os.devnull, os.O_RDONLY)
        if fd >= limit:
            os.close(fd)
            return
        held.append(fd)


def _spawn_external(command: ExternalCommand, options: SpawnOptions) -> SpawnHandle:
    mapping = options.merged_with(REDIRECTIONS.materialize())
    flush_streams(mapping.values())

    stdin, stdout, stderr = (mapping.pop(fd, None) for fd, _ in _STD_NAMES)

    env = None
    if options.env is not None:
        env = {
            name: value
            for name, value in {**os.environ, **options.env}.items()
            if value is not None
        }

    # Descriptors above stderr are copied above the highest target first, so
    # installing one target never clobbers the source of another.
    moved: dict[int, int] = {}
    held: list[int] = []
    try:
        if mapping:
            floor = max(mapping) + 1
            for fd, stream in sorted(mapping.items()):
                moved[fd] = fcntl.fcntl(fileno(stream), fcntl.F_DUPFD_CLOEXEC, floor)
            _hold_free_descriptors(floor, held)
        process = subprocess.Popen(
            list(command.argv),
            stdin=stdin,
            stdout=stdout,
            stderr=stderr,
            # Installed targets are inheritable; close_fds would drop them.
            close_fds=options.close_others and not moved,
            preexec_fn=_descriptor_installer(moved) if moved else None,
            cwd=options.cwd,
            env=env,
        )
    except OSError as exc:
        raise SpawnError(command, exc.strerror or str(exc)) from exc
    except subprocess.SubprocessError as exc:
        raise SpawnError(command, str(exc)) from exc
    finally:
        for fd in [*moved.values(), *held]:
            os.close(fd)

    LOGGER.debug("Spawned %s (pid %d)", command, process.pid)
    return SpawnHandle(command, process=process)


def _spawn_function(command, options: SpawnOptions) -> SpawnHandle:
    flush_streams([*REDIRECTIONS.materialize().values(), *options.redirections().values()])
    try:
        pid = os.fork()
    except OSError as exc:
        raise SpawnError(command, exc.strerror or str(exc)) from exc

    if pid == 0:
        _run_child(command, options)  # Does not return

    LOGGER.debug("Forked %s (pid %d)", command, pid)
    return SpawnHandle(command, pid=pid)


def _close_quietly(stream) -> None:
    try:
        if isinstance(stream, int):
            os.close(stream)
        elif not stream.closed:
            stream.close()
    except OSError:
        pass


def _run_child(command, options: SpawnOptions) -> None:
    """Body of a forked child: run the callable and leave with its status."""
    status = EXIT_EXCEPTION
    try:
        # The ends the parent keeps must not stay open here, or readers
        # downstream never see EOF.
        for stream in options.close:
            _close_quietly(stream)
        if options.cwd is not None:
            os.chdir(options.cwd)
        if options.env is not None:
            for name, value in options.env.items():
                if value is None:
                    os.environ.pop(name, None)
                else:
                    os.environ[name] = value

        with ExitStack() as stack:
            for fd, name in _STD_NAMES:
                stream = getattr(options, name)
                if stream is not None:
                    stack.enter_context(redirect_to(fd, name, stream))
            for fd, stream in options.fds.items():
                stack.enter_context(redirect_to(fd, None, stream))
            status = 0 if command.func() else 1
    except SystemExit as exc:
        if exc.code is None or isinstance(exc.code, int):
            status = exc.code or 0
        else:
            print(exc.code, file=sys.stderr)
            status = 1
    except BaseException:
        traceback.print_exc()
        status = EXIT_EXCEPTION
    finally:
        flush_streams()
        os._exit(status)
