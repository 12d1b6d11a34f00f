"""Response framing — terminal markers on the byte stream.

Responses travel as plain text with a *marker* appended to say how the
response ended.  There is no length prefix: the reader accumulates
chunks until it sees a marker.

    Normal completion:   <payload>[END]
    Service halting:     <payload>[HALT]
    Session closed:      <payload>[QUIT]
    Session aborted:     <payload>[ABORT]

``[HALT]``, ``[QUIT]`` and ``[ABORT]`` are *out-of-band* markers: if
any of them appears anywhere in a chunk, the reader treats the
connection as finished, regardless of what else arrived.  ``[END]``
only finishes the current response.

Markers are not escaped, so command output that happens to contain a
marker token is indistinguishable from a real marker.  This keeps the
wire format compatible with existing clients.
"""

from dataclasses import dataclass
from enum import StrEnum


class Marker(StrEnum):
    """Terminal markers embedded in the response stream."""

    END = "[END]"
    HALT = "[HALT]"
    QUIT = "[QUIT]"
    ABORT = "[ABORT]"

    @property
    def is_terminal(self) -> bool:
        """Return True if this marker ends the whole connection."""
        return self is not Marker.END

    def encode_marker(self) -> bytes:
        """Return the marker as wire bytes."""
        return self.value.encode()


# Out-of-band markers are checked before END so that they override it.
_PRECEDENCE: tuple[Marker, ...] = (Marker.HALT, Marker.ABORT, Marker.QUIT, Marker.END)


def frame(payload: bytes | str = b"", marker: Marker = Marker.END) -> bytes:
    """Append exactly one terminal marker to a payload.

    Args:
        payload: The response body (text is UTF-8 encoded).
        marker: How the response ends.

    Returns:
        The framed response bytes.

    """
    body = payload.encode() if isinstance(payload, str) else payload
    return body + marker.encode_marker()


def find_marker(data: bytes) -> Marker | None:
    """Return the dominant marker present in *data*, or None.

    Out-of-band markers win over ``[END]`` wherever they appear.
    """
    return next((m for m in _PRECEDENCE if m.encode_marker() in data), None)


@dataclass(frozen=True)
class Response:
    """A complete response read from the stream.

    Attributes:
        payload: Decoded text with the marker removed.
        marker: The marker that terminated the response.

    """

    payload: str
    marker: Marker

    @property
    def is_terminal(self) -> bool:
        """Return True if the connection is over after this response."""
        return self.marker.is_terminal


def split_response(data: bytes) -> tuple[bytes, Marker | None]:
    """Separate the payload from its marker.

    Returns:
        ``(payload, marker)``; the payload is everything before the
        first occurrence of the dominant marker.  If no marker is
        present, returns ``(data, None)``.

    """
    marker = find_marker(data)
    if marker is None:
        return data, None
    index = data.index(marker.encode_marker())
    return data[:index], marker


class ResponseReader:
    """Accumulate stream chunks until a response is complete.

    Feed raw chunks with ``feed()``; it returns a ``Response`` once a
    marker has arrived and None while more data is needed.  Bytes that
    follow an ``[END]`` marker are kept for the next response.
    """

    def __init__(self) -> None:
        """Create a reader with an empty buffer."""
        self._buffer = bytearray()

    @property
    def pending(self) -> bytes:
        """Return bytes received but not yet part of a response."""
        return bytes(self._buffer)

    def feed(self, chunk: bytes) -> Response | None:
        """Add *chunk* and return a completed response, if any."""
        self._buffer.extend(chunk)
        payload, marker = split_response(bytes(self._buffer))
        if marker is None:
            return None
        consumed = len(payload) + len(marker.encode_marker())
        del self._buffer[:consumed]
        if marker.is_terminal:
            self._buffer.clear()
        return Response(payload=payload.decode(errors="replace"), marker=marker)
