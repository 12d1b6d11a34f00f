"""Service signals — how ``halt`` reaches every session.

``halt`` is a service-wide event, not a registry operation.  It travels
as a real Unix signal:

    1. The halting session signals the listener process (``HALT``).
    2. The listener forwards ``HALT`` to every live session process.
    3. Each session's handler raises ``ServiceHalted`` out of whatever
       it is blocked on; the session writes ``[HALT]`` to its client
       and exits.

Forced teardown of a single session (``abort``/``quit``) uses the
uncatchable ``ABORT`` signal instead — the session gets no chance to
react, exactly like ``kill -9``.

Design choices:
    - **IntEnum with Unix values** — ``ServiceSignal.HALT`` *is*
      ``SIGTERM``, so it can be passed straight to ``os.kill``.
    - **Raise from the handler** — Python retries interrupted system
      calls unless the handler raises, so raising is what makes a
      blocking ``recv()`` or ``select()`` return.
"""

import os
import signal
from collections.abc import Iterable
from enum import IntEnum
from multiprocessing.process import BaseProcess
from types import FrameType


class ServiceSignal(IntEnum):
    """Signals the service uses, with their Unix numbers."""

    HALT = signal.SIGTERM
    ABORT = signal.SIGKILL


class ServiceHalted(Exception):  # noqa: N818
    """Raised inside a process when the service-wide halt arrives."""


def _raise_halted(signum: int, _frame: FrameType | None) -> None:
    msg = f"Service halted by signal {signum}"
    raise ServiceHalted(msg)


def install_halt_handler() -> None:
    """Make the halt signal raise ``ServiceHalted`` in this process."""
    signal.signal(ServiceSignal.HALT, _raise_halted)


def ignore_halt() -> None:
    """Ignore further halt signals (used once shutdown has begun)."""
    signal.signal(ServiceSignal.HALT, signal.SIG_IGN)


def request_halt(pid: int | None = None) -> None:
    """Ask the service to halt by signalling its listener.

    Args:
        pid: The listener's process id; defaults to the parent process,
            which is the listener for every session.

    """
    os.kill(os.getppid() if pid is None else pid, ServiceSignal.HALT)


def broadcast(processes: Iterable[BaseProcess], sig: ServiceSignal = ServiceSignal.HALT) -> int:
    """Send *sig* to every live process in *processes*.

    Returns:
        The number of processes signalled.

    """
    sent = 0
    for proc in processes:
        if proc.pid is None or not proc.is_alive():
            continue
        try:
            os.kill(proc.pid, sig)
        except ProcessLookupError:
            continue
        sent += 1
    return sent
