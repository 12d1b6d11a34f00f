"""End-to-end tests for the listener and its sessions.

Each test starts a real server in a forked process on a Unix socket
inside ``tmp_path`` and talks to it with ``Client``.  The server is
stopped with the service halt signal, exactly as an operator would.
"""

import multiprocessing
import os
import signal
import time
from collections.abc import Iterator
from multiprocessing.synchronize import Event
from pathlib import Path

import pytest
from conftest import JOIN_TIMEOUT, STARTUP_TIMEOUT, RunningServer

from py_remsh import listener as listener_module
from py_remsh.client import Client
from py_remsh.config import UnixAddress, bind_server_socket
from py_remsh.listener import Listener
from py_remsh.protocol import Marker


@pytest.fixture
def restore_sigterm() -> Iterator[None]:
    """Put the original SIGTERM disposition back after the test."""
    previous = signal.getsignal(signal.SIGTERM)
    yield
    signal.signal(signal.SIGTERM, previous)


def _stubborn_session(ready: Event) -> None:
    """Ignore the halt signal and keep running."""
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    ready.set()
    time.sleep(30)


def _ready(server: RunningServer) -> Client:
    """Connect and complete one round trip so the session is registered."""
    client = server.connect()
    assert client.execute("echo ready").payload == "ready\n"
    return client


# -- Cycle 1: Commands -------------------------------------------------------


class TestCommands:
    """Verify ordinary command execution through the server."""

    def test_pipeline(self, server: RunningServer) -> None:
        """A pipeline runs on the server and its output comes back."""
        with _ready(server) as client:
            response = client.execute("echo hello | wc -c")
            assert response.payload.strip() == "6"
            assert response.marker is Marker.END

    def test_sessions_have_separate_cwd(self, server: RunningServer, tmp_path: Path) -> None:
        """cd in one session doesn't move another."""
        with _ready(server) as first, _ready(server) as second:
            before = second.execute("pwd").payload
            first.execute(f"cd {tmp_path}")
            assert Path(first.execute("pwd").payload.strip()).resolve() == tmp_path.resolve()
            assert second.execute("pwd").payload == before


# -- Cycle 2: stat -----------------------------------------------------------


class TestStat:
    """Verify the connection table."""

    def test_lists_connections(self, server: RunningServer) -> None:
        """stat shows every registered connection."""
        with _ready(server) as first, _ready(server):
            lines = first.execute("stat").payload.splitlines()
            assert lines[0] == "Active connections: 2"
            assert [line.split()[0] for line in lines[2:]] == ["1", "2"]
            assert all(line.endswith("local") for line in lines[2:])

    def test_stat_is_idempotent(self, server: RunningServer) -> None:
        """Two stats in a row give the same table."""
        with _ready(server) as client:
            assert client.execute("stat").payload == client.execute("stat").payload

    def test_disconnected_clients_are_reaped(self, server: RunningServer) -> None:
        """A client that hung up disappears from the table."""
        with _ready(server) as client:
            _ready(server).close()
            deadline = time.monotonic() + STARTUP_TIMEOUT
            payload = client.execute("stat").payload
            while "Active connections: 1" not in payload and time.monotonic() < deadline:
                time.sleep(0.05)
                payload = client.execute("stat").payload
            assert payload.startswith("Active connections: 1")


# -- Cycle 3: abort and quit -------------------------------------------------


class TestAbortAndQuit:
    """Verify forced disconnects."""

    def test_abort_other(self, server: RunningServer) -> None:
        """abort <id> disconnects the target and confirms to the requester."""
        with _ready(server) as first, _ready(server) as second:
            response = first.execute("abort 2")
            assert response.payload == "[INFO] Connection 2 aborted\n"
            assert response.marker is Marker.END
            assert second.read_response().marker is Marker.ABORT
            assert first.execute("stat").payload.startswith("Active connections: 1")

    def test_abort_unknown(self, server: RunningServer) -> None:
        """Aborting a missing id is an error, not a disconnect."""
        with _ready(server) as client:
            response = client.execute("abort 99")
            assert response.payload == "[ERROR] abort: no connection with id 99\n"
            assert response.marker is Marker.END

    def test_abort_self(self, server: RunningServer) -> None:
        """Aborting yourself answers ABORT and then closes the connection."""
        with _ready(server) as client:
            assert client.execute("abort 1").marker is Marker.ABORT
            with pytest.raises(ConnectionError):
                client.read_response()

    def test_quit(self, server: RunningServer) -> None:
        """quit answers QUIT and then closes the connection."""
        with _ready(server) as client:
            assert client.execute("quit").marker is Marker.QUIT
            with pytest.raises(ConnectionError):
                client.read_response()

    def test_quit_leaves_others(self, server: RunningServer) -> None:
        """Other sessions keep working after one quits."""
        with _ready(server) as first, _ready(server) as second:
            first.execute("quit")
            assert second.execute("echo still here").payload == "still here\n"


# -- Cycle 4: halt -----------------------------------------------------------


class TestHalt:
    """Verify service-wide shutdown."""

    def test_halt_reaches_every_client(self, server: RunningServer) -> None:
        """halt ends every session with HALT and stops the server."""
        with _ready(server) as first, _ready(server) as second:
            assert first.execute("halt").marker is Marker.HALT
            assert second.read_response().marker is Marker.HALT
        server.process.join(timeout=JOIN_TIMEOUT)
        assert server.process.exitcode == 0
        assert not Path(server.address.path).exists()

    def test_signal_halts_server(self, server: RunningServer) -> None:
        """The halt signal from outside shuts the service down cleanly."""
        with _ready(server) as client:
            assert server.process.pid is not None
            os.kill(server.process.pid, signal.SIGTERM)
            assert client.read_response().marker is Marker.HALT
        server.process.join(timeout=JOIN_TIMEOUT)
        assert server.process.exitcode == 0

    @pytest.mark.usefixtures("restore_sigterm")
    def test_halt_kills_sessions_that_do_not_exit(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A session ignoring the halt is killed once the grace period ends."""
        monkeypatch.setattr(listener_module, "_HALT_GRACE_SECONDS", 0.2)
        context = multiprocessing.get_context("fork")
        ready = context.Event()
        stubborn = context.Process(
            target=_stubborn_session, args=(ready,), name="remsh-session-99", daemon=True
        )
        stubborn.start()
        assert ready.wait(timeout=STARTUP_TIMEOUT)

        server_sock = bind_server_socket(UnixAddress(str(tmp_path / "halt.sock")))
        listener = Listener(server_sock)
        started = time.monotonic()
        try:
            listener._halt()
        finally:
            listener._shutdown()
        assert time.monotonic() - started < JOIN_TIMEOUT
        assert not stubborn.is_alive()
        assert stubborn.exitcode == -signal.SIGKILL
