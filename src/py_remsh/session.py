"""Session handler — the per-connection protocol state machine.

A session serves exactly one client socket.  It reads newline-
terminated command lines and answers each with one framed response:

    AWAITING_COMMAND ──line──▶ EXECUTING ──response──▶ AWAITING_COMMAND
           │
           └──quit/abort/halt/EOF──▶ TERMINATING ──▶ CLOSED

Each line is classified before anything runs:

    - ``stat``, ``abort <id>`` and ``quit`` need the connection table,
      which only the listener holds.  The session forwards them as a
      control message and writes nothing itself; the listener answers
      the client directly.
      A verb is the first token of the first ``;`` segment and must be
      the only command on its line.
    - Everything else is parsed and executed here, segment by segment,
      and the outputs of all segments go back as a single response.

The session never touches another session's state.  Its working
directory lives in its executor and is invisible to everyone else.
"""

import contextlib
import os
import socket
from collections.abc import Callable
from enum import StrEnum

from py_remsh.config import ServerConfig
from py_remsh.executor import ControlVerb, Executor, SpawnError
from py_remsh.logging import Logger, LogLevel
from py_remsh.parser import ParseError, split_segments
from py_remsh.protocol import Marker, frame
from py_remsh.registry import AbortRequest, ControlMessage, ControlSender, QuitRequest, StatRequest
from py_remsh.signals import ServiceHalted, ignore_halt, request_halt

_SOURCE = "session"
_LINE_TOO_LONG = "[ERROR] line too long\n"


class SessionState(StrEnum):
    """Lifecycle states of a session."""

    AWAITING_COMMAND = "awaiting_command"
    EXECUTING = "executing"
    TERMINATING = "terminating"
    CLOSED = "closed"


def _halt_service() -> None:
    """Start a service-wide halt from inside a session process."""
    # This session reports [HALT] itself; don't let the broadcast
    # interrupt it while it does.
    ignore_halt()
    request_halt()


class Session:
    """Serve one client connection until it ends."""

    def __init__(
        self,
        *,
        sock: socket.socket,
        control: ControlSender,
        config: ServerConfig | None = None,
        owner: int | None = None,
        conn_id: int = 0,
        logger: Logger | None = None,
        executor: Executor | None = None,
        halt: Callable[[], None] = _halt_service,
    ) -> None:
        """Create a session bound to a connected socket.

        Args:
            sock: The client socket this session owns.
            control: Write end of the control channel to the listener.
            config: Server settings (read size, line limit).
            owner: This session's owner id; defaults to the current pid.
            conn_id: Registry id, used only for log entries.
            logger: Event log; a private one is created if omitted.
            executor: Pipeline executor; a fresh one is created if omitted.
            halt: Called when ``halt`` runs, to start service shutdown.

        """
        self._sock = sock
        self._control = control
        self._config = config or ServerConfig()
        self._owner = os.getpid() if owner is None else owner
        self._conn_id = conn_id
        self._logger = logger or Logger()
        self._executor = executor or Executor(on_halt=halt)
        self._state = SessionState.AWAITING_COMMAND
        self._buffer = bytearray()
        self._discarding = False

    @property
    def state(self) -> SessionState:
        """Return the current state."""
        return self._state

    def run(self) -> None:
        """Read and answer command lines until the session ends.

        Ends on peer close, read/write error, ``halt``, a fatal
        ``SpawnError``, or the service-wide halt signal.
        """
        try:
            while self._state is SessionState.AWAITING_COMMAND:
                line = self._next_line()
                if line is None:
                    break
                response = self.handle_line(line)
                if response is not None:
                    self._write(response)
        except ServiceHalted:
            # A second halt must not interrupt the marker write.
            ignore_halt()
            self._log(LogLevel.INFO, "Service halt observed")
            self._state = SessionState.TERMINATING
            self._write(frame(b"", Marker.HALT))
        finally:
            self._close()

    def handle_line(self, line: str) -> bytes | None:
        """Classify and process one command line.

        Returns:
            The framed response to send, or None if the line was
            forwarded to the listener (which answers the client itself).

        """
        self._log(LogLevel.DEBUG, f"Command: {line.strip()}")
        if not line.strip():
            return frame(b"")

        # A verb is the first token of the first segment; ";" ends it.
        first, *rest = split_segments(line)
        tokens = first.split()
        verb = tokens[0] if tokens else ""
        if verb in ControlVerb and any(segment.strip() for segment in rest):
            return frame(f"[ERROR] {verb}: must be the only command on the line\n")

        match verb:
            case ControlVerb.STAT:
                return self._forward(StatRequest(requester=self._owner))
            case ControlVerb.QUIT:
                return self._forward(QuitRequest(requester=self._owner))
            case ControlVerb.ABORT:
                return self._abort(tokens[1:])
            case _:
                return self._execute(line)

    def _abort(self, args: list[str]) -> bytes | None:
        if not args:
            return frame("[ERROR] abort: missing connection id\n")
        try:
            target = int(args[0])
        except ValueError:
            return frame(f"[ERROR] abort: invalid connection id: {args[0]}\n")
        return self._forward(AbortRequest(target=target, requester=self._owner))

    def _forward(self, message: ControlMessage) -> None:
        self._control.send(message)

    def _execute(self, line: str) -> bytes:
        """Run every segment of *line* and frame the combined output."""
        self._state = SessionState.EXECUTING
        output = bytearray()
        marker = Marker.END
        try:
            for result in self._executor.iter_line(line):
                output.extend(result.output)
                if result.halted:
                    marker = Marker.HALT
        except ParseError as e:
            output.extend(f"[ERROR] {e}\n".encode())
        except SpawnError as e:
            self._log(LogLevel.ERROR, f"Spawn failed: {e}")
            output.extend(f"[ERROR] {e}\n".encode())
            marker = Marker.QUIT

        if marker.is_terminal:
            self._state = SessionState.TERMINATING
        else:
            self._state = SessionState.AWAITING_COMMAND
        return frame(bytes(output), marker)

    # -- Socket I/O ---------------------------------------------------------

    def _next_line(self) -> str | None:
        """Return the next complete line, or None once the peer is gone.

        A trailing unterminated chunk is returned as a final line when
        the peer closes its write side.  Lines longer than the
        configured limit are answered with an error and skipped.
        """
        while True:
            newline = self._buffer.find(b"\n")
            if newline >= 0:
                raw = bytes(self._buffer[:newline])
                del self._buffer[: newline + 1]
                if self._discarding:
                    self._discarding = False
                    continue
                if len(raw) > self._config.max_line_bytes:
                    self._write(frame(_LINE_TOO_LONG))
                    continue
                return raw.decode(errors="replace")

            if len(self._buffer) > self._config.max_line_bytes:
                self._buffer.clear()
                if not self._discarding:
                    self._discarding = True
                    self._write(frame(_LINE_TOO_LONG))

            try:
                chunk = self._sock.recv(self._config.recv_size)
            except OSError:
                chunk = b""
            if not chunk:
                self._state = SessionState.TERMINATING
                if self._buffer and not self._discarding:
                    raw = bytes(self._buffer)
                    self._buffer.clear()
                    return raw.decode(errors="replace")
                return None
            self._buffer.extend(chunk)

    def _write(self, data: bytes) -> None:
        try:
            self._sock.sendall(data)
        except OSError:
            self._state = SessionState.TERMINATING

    def _log(self, level: LogLevel, message: str) -> None:
        self._logger.log(level, message, source=_SOURCE, conn_id=self._conn_id)

    def _close(self) -> None:
        self._state = SessionState.CLOSED
        # Shutting down (not just closing) also ends the listener's copy,
        # so the client sees end-of-stream right away.
        with contextlib.suppress(OSError):
            self._sock.shutdown(socket.SHUT_RDWR)
        self._sock.close()
        self._log(LogLevel.INFO, "Session closed")
