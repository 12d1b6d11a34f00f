"""Connection registry and control messages.

The registry is the listener's table of live connections.  Each entry
records:

    - **conn_id** — a small, monotonically increasing number (1, 2, …)
      that users type in ``abort <id>``.
    - **sock** — the listener's own copy of the client socket, used to
      deliver out-of-band markers to that client.
    - **owner** — the process id of the session serving the connection.

Only the listener's event loop ever mutates the registry, so there is
no locking: access is serialized by construction.  Sessions never see
the table.  When a session needs something that requires global
knowledge it sends a *control message* to the listener instead:

    - ``StatRequest``  — "list every connection to me".
    - ``AbortRequest`` — "disconnect connection N".
    - ``QuitRequest``  — "disconnect me".

Requests identify the requester by its owner id (its pid) because a
session only knows who *it* is, not which table slot it occupies.

Design choices:
    - Auto-incrementing ids via ``itertools.count`` — ids are never
      reused while the listener runs.
    - Lookups are linear scans; a shell server has a handful of
      connections, not thousands.
    - Entries of sessions that ended on their own (client hung up) are
      not removed immediately; ``reap()`` collects them lazily.
"""

import socket
from dataclasses import dataclass
from itertools import count
from multiprocessing.process import BaseProcess
from typing import Any, Protocol, TypeAlias


class RegistryMiss(LookupError):
    """Raise when a control request names a connection that isn't live."""


@dataclass(frozen=True)
class StatRequest:
    """Ask the listener for the connection table."""

    requester: int


@dataclass(frozen=True)
class QuitRequest:
    """Ask the listener to close the requester's own connection."""

    requester: int


@dataclass(frozen=True)
class AbortRequest:
    """Ask the listener to force-disconnect connection ``target``."""

    target: int
    requester: int


ControlMessage: TypeAlias = StatRequest | QuitRequest | AbortRequest


class ControlSender(Protocol):
    """The write end of the session → listener control channel."""

    def send(self, obj: Any) -> None:
        """Send one message to the listener."""
        ...


@dataclass
class Connection:
    """One live client connection.

    Attributes:
        conn_id: Registry id shown by ``stat`` and used by ``abort``.
        sock: The listener's copy of the client socket.
        peer: Printable peer address ("local" for Unix sockets).
        owner: Process id of the serving session, once spawned.
        process: The session process handle, once spawned.

    """

    conn_id: int
    sock: socket.socket
    peer: str
    owner: int | None = None
    process: BaseProcess | None = None

    @property
    def is_alive(self) -> bool:
        """Return True while the session process is running."""
        return self.process is not None and self.process.is_alive()

    def __str__(self) -> str:
        """Format as one ``stat`` table row."""
        owner = "-" if self.owner is None else str(self.owner)
        return f"{self.conn_id:<6} {owner:<8} {self.peer}"


_STAT_HEADER = "ID     OWNER    PEER"


class Registry:
    """Insertion-ordered table of live connections."""

    def __init__(self) -> None:
        """Create an empty registry."""
        self._connections: dict[int, Connection] = {}
        self._counter = count(start=1)

    def add(self, *, sock: socket.socket, peer: str) -> Connection:
        """Register a newly accepted connection.

        Returns:
            The new entry, with the next connection id.

        """
        conn = Connection(conn_id=next(self._counter), sock=sock, peer=peer)
        self._connections[conn.conn_id] = conn
        return conn

    def attach(self, conn_id: int, process: BaseProcess) -> None:
        """Record the session process that serves *conn_id*."""
        conn = self.require(conn_id)
        conn.process = process
        conn.owner = process.pid

    def get(self, conn_id: int) -> Connection | None:
        """Return the connection with *conn_id*, or None."""
        return next((c for c in self._connections.values() if c.conn_id == conn_id), None)

    def get_by_owner(self, owner: int) -> Connection | None:
        """Return the connection served by process *owner*, or None."""
        return next((c for c in self._connections.values() if c.owner == owner), None)

    def require(self, conn_id: int) -> Connection:
        """Return the connection with *conn_id*.

        Raises:
            RegistryMiss: If there is no such connection.

        """
        conn = self.get(conn_id)
        if conn is None:
            msg = f"no connection with id {conn_id}"
            raise RegistryMiss(msg)
        return conn

    def require_owner(self, owner: int) -> Connection:
        """Return the connection served by *owner*.

        Raises:
            RegistryMiss: If no connection has that owner.

        """
        conn = self.get_by_owner(owner)
        if conn is None:
            msg = f"no connection owned by process {owner}"
            raise RegistryMiss(msg)
        return conn

    def remove(self, conn_id: int) -> Connection | None:
        """Remove and return an entry (None if it was already gone)."""
        return self._connections.pop(conn_id, None)

    def list_connections(self) -> list[Connection]:
        """Return all entries in registration order."""
        return list(self._connections.values())

    def reap(self) -> list[Connection]:
        """Remove entries whose session process has exited.

        Entries not yet attached to a process are kept.

        Returns:
            The removed entries; the caller closes their sockets.

        """
        dead = [
            c for c in self._connections.values() if c.process is not None and not c.is_alive
        ]
        for conn in dead:
            del self._connections[conn.conn_id]
        return dead

    def render(self) -> str:
        """Render the table as text for ``stat``."""
        lines = [f"Active connections: {len(self._connections)}", _STAT_HEADER]
        lines.extend(str(c) for c in self._connections.values())
        return "\n".join(lines) + "\n"

    def __len__(self) -> int:
        """Return the number of registered connections."""
        return len(self._connections)
