"""Client side — connect, send lines, read framed responses.

The client is a thin I/O wrapper around the protocol:

    1. **Send** — one newline-terminated command line.
    2. **Receive** — accumulate chunks until a marker arrives.
    3. **Show** — print the payload.
    4. **Stop** — on ``[QUIT]``, ``[HALT]`` or ``[ABORT]`` the
      connection is over; on ``[END]`` carry on with the next line.

Three line suppliers feed the same ``Client.execute()`` entry point:
the interactive REPL, a one-shot command from the CLI, and a script
file.  The prompt and the loop are kept apart from the socket code so
each piece is testable on its own.
"""

import getpass
import readline  # noqa: F401  (line editing and history for input())
import socket
from collections.abc import Callable, Iterable
from datetime import datetime
from types import TracebackType
from typing import TypeAlias

from py_remsh.config import DEFAULT_RECV_SIZE, Address, connect_socket
from py_remsh.protocol import Marker, Response, ResponseReader

LineReader: TypeAlias = Callable[[str], str]
LineWriter: TypeAlias = Callable[[str], None]

_YELLOW = "\033[33m"
_GREEN = "\033[32m"
_BLUE = "\033[34m"
_RESET = "\033[0m"

_FAREWELLS: dict[Marker, str] = {
    Marker.QUIT: "[CLIENT] Quit command issued. Disconnecting.",
    Marker.HALT: "[INFO] Server requested shutdown. Exiting.",
    Marker.ABORT: "[INFO] Connection aborted by another client. Exiting.",
}

EXIT_OK = 0
EXIT_CONNECTION_LOST = 1


class Client:
    """A connection to a remote shell server."""

    def __init__(self, sock: socket.socket, *, recv_size: int = DEFAULT_RECV_SIZE) -> None:
        """Wrap an already-connected socket.

        Args:
            sock: Connected stream socket.
            recv_size: Bytes requested per read.

        """
        self._sock = sock
        self._recv_size = recv_size
        self._reader = ResponseReader()

    @classmethod
    def connect(cls, address: Address) -> "Client":
        """Open a connection to the server at *address*."""
        return cls(connect_socket(address))

    def send_line(self, line: str) -> None:
        """Send one command line (a newline is appended if missing)."""
        data = line if line.endswith("\n") else line + "\n"
        self._sock.sendall(data.encode())

    def read_response(self) -> Response:
        """Block until a complete response has arrived.

        Raises:
            ConnectionError: If the server closes the connection first.

        """
        response = self._reader.feed(b"")
        while response is None:
            chunk = self._sock.recv(self._recv_size)
            if not chunk:
                msg = "Connection to server was closed"
                raise ConnectionError(msg)
            response = self._reader.feed(chunk)
        return response

    def execute(self, line: str) -> Response:
        """Send *line* and return the server's response."""
        self.send_line(line)
        return self.read_response()

    def close(self) -> None:
        """Close the connection."""
        self._sock.close()

    def __enter__(self) -> "Client":
        """Return self for use in a ``with`` block."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Close the connection on leaving the block."""
        self.close()


def build_prompt(
    *,
    now: datetime | None = None,
    user: str | None = None,
    host: str | None = None,
    color: bool = True,
) -> str:
    """Build the prompt string ``HH:MM user@host# ``.

    Args:
        now: Time to show (defaults to the current local time).
        user: Username (defaults to the login name).
        host: Hostname (defaults to this machine's name).
        color: Wrap each part in ANSI colour codes.

    """
    stamp = (now or datetime.now()).strftime("%H:%M")  # noqa: DTZ005
    user = user or getpass.getuser()
    host = host or socket.gethostname()
    if not color:
        return f"{stamp} {user}@{host}# "
    return f"{_YELLOW}{stamp}{_RESET} {_GREEN}{user}{_RESET}@{_BLUE}{host}{_RESET}# "


def _show(response: Response, write: LineWriter) -> bool:
    """Print a response; return True if the session continues."""
    if response.payload:
        write(response.payload.rstrip("\n"))
    if response.is_terminal:
        write(_FAREWELLS[response.marker])
        return False
    return True


def run_once(client: Client, line: str, *, write: LineWriter = print) -> int:
    """Send a single command and print its response."""
    try:
        _show(client.execute(line), write)
    except ConnectionError as e:
        write(f"[ERROR] {e}.")
        return EXIT_CONNECTION_LOST
    return EXIT_OK


def run_script(client: Client, lines: Iterable[str], *, write: LineWriter = print) -> int:
    """Feed script lines to the server, one at a time.

    Blank lines and ``#`` comments are skipped.  Stops at the first
    terminal marker.
    """
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        try:
            if not _show(client.execute(line), write):
                break
        except ConnectionError as e:
            write(f"[ERROR] {e}.")
            return EXIT_CONNECTION_LOST
    return EXIT_OK


def run_repl(
    client: Client,
    *,
    read_line: LineReader = input,
    write: LineWriter = print,
    prompt: Callable[[], str] = build_prompt,
) -> int:
    """Run the interactive read-send-print loop.

    Handles Ctrl+D (EOF) and Ctrl+C as a graceful exit.
    """
    write("[INFO] Connected to server.")
    try:
        while True:
            try:
                line = read_line(prompt())
            except EOFError:
                write("\nExiting.")
                break
            if not line.strip():
                continue
            try:
                if not _show(client.execute(line), write):
                    break
            except ConnectionError as e:
                write(f"[ERROR] {e}.")
                return EXIT_CONNECTION_LOST
    except KeyboardInterrupt:
        write("\nInterrupted.")
    return EXIT_OK
