"""Server event log.

The logger records structured entries for service events — which
connection arrived, who asked for what, which session was torn down.

- **LogLevel** — severity levels ordered for filtering (DEBUG < ERROR).
- **LogEntry** — a single structured record (level, message, source,
  connection id).
- **Logger** — a bounded append-only log with filtering, clearing, and
  an optional *sink* that echoes entries as they happen (the server CLI
  points it at stderr).

Design choices:
    - **IntEnum for levels** so they compare naturally with ``<``.
    - **Frozen dataclass for entries** — log records are immutable.
    - **Bounded deque** — a long-running listener must not grow its log
      without limit; the oldest entries fall off first.
"""

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import IntEnum
from typing import TypeAlias

DEFAULT_MAX_ENTRIES = 1000

LogSink: TypeAlias = Callable[[str], None]


class LogLevel(IntEnum):
    """Severity levels for log entries."""

    DEBUG = 0
    INFO = 1
    WARNING = 2
    ERROR = 3


@dataclass(frozen=True)
class LogEntry:
    """A single structured log record.

    Attributes:
        level: The severity of this event.
        message: A human-readable description of what happened.
        source: The component that generated the event (e.g. "listener").
        conn_id: The connection the event concerns (0 = none / service).

    """

    level: LogLevel
    message: str
    source: str
    conn_id: int = 0

    def __str__(self) -> str:
        """Format as ``[LEVEL] source: message``."""
        return f"[{self.level.name}] {self.source}: {self.message}"


class Logger:
    """Bounded append-only log buffer with filtering and an echo sink."""

    def __init__(
        self,
        *,
        sink: LogSink | None = None,
        sink_level: LogLevel = LogLevel.INFO,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ) -> None:
        """Create an empty logger.

        Args:
            sink: Called with the formatted entry for every entry at or
                above ``sink_level``.
            sink_level: Minimum level echoed to the sink.
            max_entries: Maximum number of entries retained.

        """
        self._entries: deque[LogEntry] = deque(maxlen=max_entries)
        self._sink = sink
        self._sink_level = sink_level

    @property
    def entries(self) -> list[LogEntry]:
        """Return retained entries in chronological order."""
        return list(self._entries)

    def log(
        self,
        level: LogLevel,
        message: str,
        *,
        source: str,
        conn_id: int = 0,
    ) -> None:
        """Append a new entry, echoing it to the sink if loud enough."""
        entry = LogEntry(level=level, message=message, source=source, conn_id=conn_id)
        self._entries.append(entry)
        if self._sink is not None and level >= self._sink_level:
            self._sink(str(entry))

    def filter(
        self,
        *,
        min_level: LogLevel | None = None,
        source: str | None = None,
    ) -> list[LogEntry]:
        """Return entries matching the given criteria."""
        result = list(self._entries)
        if min_level is not None:
            result = [e for e in result if e.level >= min_level]
        if source is not None:
            result = [e for e in result if e.source == source]
        return result

    def clear(self) -> None:
        """Remove all log entries."""
        self._entries.clear()
