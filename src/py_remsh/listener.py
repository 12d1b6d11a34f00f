"""Listener event loop — accept connections and serve control requests.

The listener is the only long-lived process of the service.  It waits
on two things at once:

    - the **accept socket** — a new client is connecting;
    - the **control channel** — a session wants something that needs
      the connection table (``stat``, ``abort``, ``quit``).

For every accepted client the listener forks a fresh session process.
The child closes every descriptor it inherited but does not own (the
accept socket, the control channel's read end, other clients' sockets)
and then runs the session loop.  The parent keeps its own copy of the
client socket in the registry so it can deliver out-of-band markers.

The registry lives here and nowhere else.  Sessions reach it only by
sending control messages; the listener applies them one at a time, so
no locks are needed.

``halt`` doesn't go through the registry at all: it arrives as the
service halt signal, which the listener forwards to every live session
process before exiting.
"""

import contextlib
import multiprocessing
import os
import selectors
import socket
from collections.abc import Callable
from multiprocessing.process import BaseProcess
from typing import TypeAlias

from py_remsh.config import ServerConfig, UnixAddress, bind_server_socket
from py_remsh.logging import Logger, LogLevel
from py_remsh.protocol import Marker, frame
from py_remsh.registry import (
    AbortRequest,
    Connection,
    ControlMessage,
    QuitRequest,
    Registry,
    RegistryMiss,
    StatRequest,
)
from py_remsh.session import Session
from py_remsh.signals import (
    ServiceHalted,
    ServiceSignal,
    broadcast,
    ignore_halt,
    install_halt_handler,
)

_SOURCE = "listener"
_HALT_GRACE_SECONDS = 5.0

_ReadyHandler: TypeAlias = Callable[[], None]


def _peer_name(address: object) -> str:
    """Return a printable peer address."""
    if isinstance(address, tuple) and len(address) >= 2:  # noqa: PLR2004
        return f"{address[0]}:{address[1]}"
    return "local"


class Listener:
    """Own the accept socket, the registry, and every session process."""

    def __init__(
        self,
        server_sock: socket.socket,
        *,
        config: ServerConfig | None = None,
        logger: Logger | None = None,
    ) -> None:
        """Create a listener around an already-listening socket.

        Args:
            server_sock: A bound, listening socket.
            config: Settings passed on to every session.
            logger: Event log shared with (forked copies in) sessions.

        """
        self._server_sock = server_sock
        self._config = config or ServerConfig()
        self._logger = logger or Logger()
        self._registry = Registry()
        self._context = multiprocessing.get_context("fork")
        self._control_reader, self._control_writer = self._context.Pipe(duplex=False)
        self._selector = selectors.DefaultSelector()

    @property
    def registry(self) -> Registry:
        """Return the connection registry."""
        return self._registry

    def serve_forever(self) -> None:
        """Run the event loop until the service halts."""
        install_halt_handler()
        self._selector.register(self._server_sock, selectors.EVENT_READ, self._on_accept)
        self._selector.register(self._control_reader, selectors.EVENT_READ, self._on_control)
        self._log(LogLevel.INFO, f"{self._config.shell_name} listening on {self._config.address}")
        try:
            while True:
                for key, _events in self._selector.select():
                    handler: _ReadyHandler = key.data
                    handler()
                self._reap()
        except ServiceHalted:
            self._halt()
        finally:
            self._shutdown()

    # -- Accept -------------------------------------------------------------

    def _on_accept(self) -> None:
        try:
            client_sock, address = self._server_sock.accept()
        except OSError as e:
            self._log(LogLevel.WARNING, f"Accept failed: {e}")
            return

        conn = self._registry.add(sock=client_sock, peer=_peer_name(address))
        process = self._context.Process(
            target=self._session_main,
            args=(conn,),
            name=f"remsh-session-{conn.conn_id}",
            daemon=True,
        )
        try:
            process.start()
        except OSError as e:
            self._log(LogLevel.ERROR, f"Cannot spawn session: {e}", conn.conn_id)
            self._registry.remove(conn.conn_id)
            client_sock.close()
            return
        self._registry.attach(conn.conn_id, process)
        self._log(LogLevel.INFO, f"Client connected (pid {process.pid})", conn.conn_id)

    def _session_main(self, conn: Connection) -> None:
        """Entry point of a forked session process."""
        self._selector.close()
        self._server_sock.close()
        self._control_reader.close()
        for other in self._registry.list_connections():
            if other.conn_id != conn.conn_id:
                other.sock.close()
        install_halt_handler()

        session = Session(
            sock=conn.sock,
            control=self._control_writer,
            config=self._config,
            conn_id=conn.conn_id,
            logger=self._logger,
        )
        session.run()

    # -- Control channel ----------------------------------------------------

    def _on_control(self) -> None:
        try:
            message: ControlMessage = self._control_reader.recv()
        except (EOFError, OSError) as e:
            self._log(LogLevel.WARNING, f"Control channel read failed: {e}")
            return

        self._log(LogLevel.DEBUG, f"Control message: {message}")
        try:
            match message:
                case StatRequest():
                    self._handle_stat(message)
                case AbortRequest():
                    self._handle_abort(message)
                case QuitRequest():
                    self._handle_quit(message)
                case _:
                    self._log(LogLevel.WARNING, f"Unknown control message: {message!r}")
        except RegistryMiss as e:
            self._log(LogLevel.WARNING, f"Ignoring control message: {e}")

    def _handle_stat(self, message: StatRequest) -> None:
        self._reap()
        requester = self._registry.require_owner(message.requester)
        self._send(requester, frame(self._registry.render()))

    def _handle_abort(self, message: AbortRequest) -> None:
        requester = self._registry.require_owner(message.requester)
        if requester.conn_id == message.target:
            self._send(requester, frame(b"", Marker.ABORT))
            self._terminate(requester, reason="self-abort")
            return

        target = self._registry.get(message.target)
        if target is None:
            text = f"[ERROR] abort: no connection with id {message.target}\n"
            self._send(requester, frame(text))
            return

        self._send(requester, frame(f"[INFO] Connection {target.conn_id} aborted\n"))
        self._send(target, frame(b"", Marker.ABORT))
        self._terminate(target, reason=f"aborted by connection {requester.conn_id}")

    def _handle_quit(self, message: QuitRequest) -> None:
        requester = self._registry.require_owner(message.requester)
        self._send(requester, frame(b"", Marker.QUIT))
        self._terminate(requester, reason="quit")

    # -- Helpers ------------------------------------------------------------

    def _send(self, conn: Connection, data: bytes) -> None:
        try:
            conn.sock.sendall(data)
        except OSError as e:
            self._log(LogLevel.WARNING, f"Send failed: {e}", conn.conn_id)

    def _terminate(self, conn: Connection, *, reason: str) -> None:
        """Kill a session process and drop its registry entry."""
        if conn.process is not None:
            broadcast([conn.process], ServiceSignal.ABORT)
            conn.process.join()
        self._release(conn)
        self._log(LogLevel.INFO, f"Connection closed ({reason})", conn.conn_id)

    def _release(self, conn: Connection) -> None:
        self._registry.remove(conn.conn_id)
        conn.sock.close()

    def _reap(self) -> None:
        for conn in self._registry.reap():
            conn.sock.close()
            self._log(LogLevel.INFO, "Client disconnected", conn.conn_id)

    def _halt(self) -> None:
        """Forward the halt to every session and wait for them to exit."""
        ignore_halt()
        processes = self._sessions()
        count = broadcast(processes, ServiceSignal.HALT)
        self._log(LogLevel.INFO, f"Service halting; signalled {count} session(s)")
        for process in processes:
            process.join(timeout=_HALT_GRACE_SECONDS)
        stragglers = [p for p in processes if p.is_alive()]
        if stragglers:
            self._log(LogLevel.WARNING, f"Killing {len(stragglers)} session(s) that did not exit")
            broadcast(stragglers, ServiceSignal.ABORT)
            for process in stragglers:
                process.join()

    def _sessions(self) -> list[BaseProcess]:
        return [
            child
            for child in self._context.active_children()
            if child.name.startswith("remsh-session-")
        ]

    def _shutdown(self) -> None:
        for conn in self._registry.list_connections():
            self._release(conn)
        self._selector.close()
        self._server_sock.close()
        self._control_reader.close()
        self._control_writer.close()
        self._log(LogLevel.INFO, "Listener stopped")

    def _log(self, level: LogLevel, message: str, conn_id: int = 0) -> None:
        self._logger.log(level, message, source=_SOURCE, conn_id=conn_id)


def run_server(config: ServerConfig, *, logger: Logger | None = None) -> None:
    """Bind the configured address and serve until halted."""
    server_sock = bind_server_socket(config.address, backlog=config.backlog)
    try:
        Listener(server_sock, config=config, logger=logger).serve_forever()
    finally:
        server_sock.close()
        if isinstance(config.address, UnixAddress):
            with contextlib.suppress(FileNotFoundError):
                os.unlink(config.address.path)
