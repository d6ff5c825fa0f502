"""Child process execution with inherited streams and signal handling.

While credvault owns shared state (a switched foreign store, a running
child), SIGINT, SIGTERM and SIGHUP are routed through a
:class:`SignalGuard` instead of their usual handlers:

* with a child attached, SIGTERM and SIGHUP are forwarded to it. SIGINT is
  forwarded only when the child sits in another process group; otherwise
  the terminal has already delivered it to the child.
* with no child attached, the signal is held and re-delivered to the
  previous handler once the guard is released.

Guards nest: :func:`deferred_signals` inside an active guard reuses it, so
:func:`run_process` called from within
:meth:`~credvault.auth.session.SessionSwitchController.switched` attaches its
child to the controller's guard.
"""

from __future__ import annotations

import contextlib
import logging
import os
import signal
import subprocess
import threading
from typing import Iterator, Mapping, Optional, Sequence

from credvault.exceptions import CommandNotFoundError, InvalidUsageError
from credvault.models import ProcessOutcome

logger = logging.getLogger(__name__)

FORWARDED_SIGNALS = tuple(
    getattr(signal, name) for name in ("SIGINT", "SIGTERM", "SIGHUP") if hasattr(signal, name)
)


def _same_process_group(proc: subprocess.Popen) -> bool:
    if not hasattr(os, "getpgid"):
        return True
    try:
        return os.getpgid(proc.pid) == os.getpgrp()
    except ProcessLookupError:
        return True


class SignalGuard:
    """Routes terminal signals while credvault must not be interrupted.

    ``pending`` lists the signals received with no child attached, in order.
    """

    def __init__(self) -> None:
        self.pending: list[int] = []
        self._child: Optional[subprocess.Popen] = None

    @contextlib.contextmanager
    def attached(self, proc: subprocess.Popen) -> Iterator[None]:
        """Forward signals to *proc* for the duration of the block."""
        self._child = proc
        try:
            yield
        finally:
            self._child = None

    def _handle(self, signum: int, _frame: object) -> None:
        proc = self._child
        if proc is not None and proc.poll() is None:
            if signum == signal.SIGINT and _same_process_group(proc):
                return
            logger.debug("Forwarding signal %d to child %d", signum, proc.pid)
            proc.send_signal(signum)
            return
        logger.debug("Holding signal %d until credvault is done", signum)
        self.pending.append(signum)


_active_guard: Optional[SignalGuard] = None


@contextlib.contextmanager
def deferred_signals() -> Iterator[SignalGuard]:
    """Install a :class:`SignalGuard` for the block, or reuse the active one.

    On leaving the outermost block the previous handlers come back and the
    first held signal is raised again, so it takes effect only after the
    block's cleanup has run. Handlers can only be installed from the main
    thread; elsewhere the guard is inert.
    """
    global _active_guard
    if _active_guard is not None:
        yield _active_guard
        return

    guard = SignalGuard()
    if threading.current_thread() is not threading.main_thread():
        yield guard
        return

    previous = {sig: signal.getsignal(sig) for sig in FORWARDED_SIGNALS}
    _active_guard = guard
    try:
        for sig in FORWARDED_SIGNALS:
            signal.signal(sig, guard._handle)
        yield guard
    finally:
        for sig, handler in previous.items():
            if handler is not None:
                signal.signal(sig, handler)
        _active_guard = None
        if guard.pending:
            logger.debug("Re-raising held signal %d", guard.pending[0])
            signal.raise_signal(guard.pending[0])


def run_process(
    argv: Sequence[str], env: Optional[Mapping[str, str]] = None
) -> ProcessOutcome:
    """Run *argv* to completion and report how it ended.

    The child inherits stdin, stdout and stderr, and the caller regains
    control only after it exits. If a signal is already being held when
    this is called, the child is not started and the outcome reports that
    signal.

    Args:
        argv: Program and arguments; no shell is involved.
        env: Complete environment for the child, or ``None`` to inherit.

    Raises:
        InvalidUsageError: If *argv* is empty.
        CommandNotFoundError: If the program is missing or not executable.
    """
    if not argv:
        raise InvalidUsageError("No command given", hint="Usage: credvault exec -- <command> [args...]")

    with deferred_signals() as guard:
        if guard.pending:
            logger.debug("Not starting %s: signal %d pending", argv[0], guard.pending[0])
            return ProcessOutcome(returncode=-guard.pending[0])
        try:
            proc = subprocess.Popen(list(argv), env=dict(env) if env is not None else None)
        except (FileNotFoundError, PermissionError, NotADirectoryError) as exc:
            raise CommandNotFoundError(f"Command not found or not executable: {argv[0]}") from exc

        with guard.attached(proc):
            returncode = proc.wait()
    logger.debug("Child %d exited with %d", proc.pid, returncode)
    return ProcessOutcome(returncode=returncode)
