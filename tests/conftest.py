"""Shared fixtures: a real server running in a forked process."""

import multiprocessing
import os
import signal
import time
from collections.abc import Iterator
from dataclasses import dataclass
from multiprocessing.process import BaseProcess
from pathlib import Path

import pytest

from py_remsh.client import Client
from py_remsh.config import ServerConfig, UnixAddress
from py_remsh.listener import run_server

STARTUP_TIMEOUT = 10.0
JOIN_TIMEOUT = 10.0


def _serve(address: UnixAddress) -> None:
    """Run a server until halted (target of the server process)."""
    run_server(ServerConfig(address=address))


@dataclass
class RunningServer:
    """A server process and the address it listens on."""

    address: UnixAddress
    process: BaseProcess

    def connect(self) -> Client:
        """Connect, retrying while the server is still starting.

        Probing with a throwaway connection would use up connection
        id 1, so startup is detected by retrying the real connection.
        """
        deadline = time.monotonic() + STARTUP_TIMEOUT
        while True:
            try:
                return Client.connect(self.address)
            except (FileNotFoundError, ConnectionRefusedError):
                if time.monotonic() > deadline:
                    raise
                time.sleep(0.05)

    def stop(self) -> None:
        """Halt the server if it is still running and reap it."""
        if self.process.is_alive() and self.process.pid is not None:
            os.kill(self.process.pid, signal.SIGTERM)
        self.process.join(timeout=JOIN_TIMEOUT)
        if self.process.is_alive():
            self.process.kill()
            self.process.join()


@pytest.fixture
def server(tmp_path: Path) -> Iterator[RunningServer]:
    """Start a server on a Unix socket in tmp_path."""
    address = UnixAddress(str(tmp_path / "remsh.sock"))
    # Not a daemon: the listener must be able to fork sessions.
    process = multiprocessing.get_context("fork").Process(target=_serve, args=(address,))
    process.start()
    running = RunningServer(address=address, process=process)
    try:
        yield running
    finally:
        running.stop()
