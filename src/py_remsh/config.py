"""Server configuration and raw socket setup.

The service listens on either a Unix domain socket (a path on disk) or
a TCP port.  Both the server and the client describe the endpoint with
an *address* value:

    - ``UnixAddress("/tmp/myshell_socket")``
    - ``TcpAddress("127.0.0.1", 5555)``

``ServerConfig`` groups the address with the few tunables the listener
and sessions need.  Values can come from code, from CLI flags, or from
the environment (``REMSH_SOCKET``, ``REMSH_HOST``, ``REMSH_PORT``).

``bind_server_socket`` and ``connect_socket`` are the only places that
touch ``socket.bind``/``listen``/``connect``; everything else works on
already-connected sockets.
"""

import os
import socket
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TypeAlias

DEFAULT_SOCKET_PATH = "/tmp/myshell_socket"  # noqa: S108
DEFAULT_HOST = "127.0.0.1"
DEFAULT_BACKLOG = 5
DEFAULT_RECV_SIZE = 1024
DEFAULT_MAX_LINE_BYTES = 65536

_MAX_PORT = 65535


class ConfigError(ValueError):
    """Raise when a configuration value is invalid."""


@dataclass(frozen=True)
class UnixAddress:
    """A Unix domain socket endpoint."""

    path: str = DEFAULT_SOCKET_PATH

    def __str__(self) -> str:
        """Format as ``unix:<path>``."""
        return f"unix:{self.path}"


@dataclass(frozen=True)
class TcpAddress:
    """A TCP endpoint."""

    host: str = DEFAULT_HOST
    port: int = 0

    def __post_init__(self) -> None:
        """Reject out-of-range ports."""
        if not 0 <= self.port <= _MAX_PORT:
            msg = f"TCP port out of range: {self.port}"
            raise ConfigError(msg)

    def __str__(self) -> str:
        """Format as ``tcp:<host>:<port>``."""
        return f"tcp:{self.host}:{self.port}"


Address: TypeAlias = UnixAddress | TcpAddress


@dataclass(frozen=True)
class ServerConfig:
    """Settings shared by the listener and its sessions.

    Attributes:
        address: Where the listener accepts connections.
        backlog: Pending-connection queue length for ``listen()``.
        recv_size: Bytes requested per socket read.
        max_line_bytes: Longest accepted command line; longer lines are
            rejected with an error response instead of being truncated.
        shell_name: Service name shown in the startup log line.

    """

    address: Address = field(default_factory=UnixAddress)
    backlog: int = DEFAULT_BACKLOG
    recv_size: int = DEFAULT_RECV_SIZE
    max_line_bytes: int = DEFAULT_MAX_LINE_BYTES
    shell_name: str = "remsh"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ServerConfig":
        """Build a config from ``REMSH_*`` environment variables.

        ``REMSH_PORT`` selects TCP (with ``REMSH_HOST``); otherwise
        ``REMSH_SOCKET`` selects the Unix socket path.

        Raises:
            ConfigError: If ``REMSH_PORT`` is not a valid port number.

        """
        env = os.environ if environ is None else environ
        address = address_from_values(
            unix_path=env.get("REMSH_SOCKET"),
            host=env.get("REMSH_HOST"),
            port=env.get("REMSH_PORT"),
        )
        return cls(address=address)


def address_from_values(
    *,
    unix_path: str | None = None,
    host: str | None = None,
    port: str | int | None = None,
) -> Address:
    """Choose an address: TCP when a port is given, else Unix socket."""
    if port is not None and port != "":
        try:
            port_number = int(port)
        except ValueError as e:
            msg = f"Invalid TCP port: {port!r}"
            raise ConfigError(msg) from e
        if port_number <= 0:
            msg = f"TCP port must be positive: {port_number}"
            raise ConfigError(msg)
        return TcpAddress(host=host or DEFAULT_HOST, port=port_number)
    return UnixAddress(path=unix_path or DEFAULT_SOCKET_PATH)


def bind_server_socket(address: Address, *, backlog: int = DEFAULT_BACKLOG) -> socket.socket:
    """Create, bind, and listen on a server socket.

    A stale Unix socket file is removed first; TCP sockets get
    ``SO_REUSEADDR`` so restarts don't wait for TIME_WAIT.
    """
    if isinstance(address, UnixAddress):
        if os.path.exists(address.path):
            os.unlink(address.path)
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        target: str | tuple[str, int] = address.path
    else:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        target = (address.host, address.port)
    try:
        sock.bind(target)
        sock.listen(backlog)
    except OSError:
        sock.close()
        raise
    return sock


def connect_socket(address: Address) -> socket.socket:
    """Open a client connection to *address*."""
    if isinstance(address, UnixAddress):
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        target: str | tuple[str, int] = address.path
    else:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        target = (address.host, address.port)
    try:
        sock.connect(target)
    except OSError:
        sock.close()
        raise
    return sock
