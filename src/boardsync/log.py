"""Logging setup with an in-memory ring buffer of recent records.

A UI can read :data:`log_buffer` to show recent failures without tailing a
file; the CLI can export it with :func:`export_logs_to_file`.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from boardsync.limits import MAX_LOG_LINES, MAX_LOG_MESSAGE_LENGTH

if TYPE_CHECKING:
    from pathlib import Path


@dataclass(slots=True)
class LogEntry:
    """A captured log record."""

    group: str  # Level name (DEBUG, INFO, WARNING, ...)
    name: str
    message: str
    timestamp: float


log_buffer: deque[LogEntry] = deque(maxlen=MAX_LOG_LINES)

_buffer_generation: int = 0


class BufferHandler(logging.Handler):
    """Logging handler that captures records into :data:`log_buffer`."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = self.format(record)
            if len(message) > MAX_LOG_MESSAGE_LENGTH:
                message = message[:MAX_LOG_MESSAGE_LENGTH] + "... [truncated]"
            log_buffer.append(
                LogEntry(
                    group=record.levelname,
                    name=record.name,
                    message=message,
                    timestamp=record.created,
                )
            )
        except Exception:
            self.handleError(record)


_handler: BufferHandler | None = None
_stream_handler: logging.Handler | None = None


def setup_logging(level: str | int = logging.WARNING, *, verbose: bool = False) -> None:
    """Install the buffer handler on the package logger.

    Idempotent: repeated calls only adjust the level and the stream handler.
    """
    global _handler, _stream_handler

    package_logger = logging.getLogger("boardsync")
    package_logger.setLevel(logging.DEBUG if verbose else level)

    if _handler is None:
        _handler = BufferHandler()
        _handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        package_logger.addHandler(_handler)

    if verbose and _stream_handler is None:
        _stream_handler = logging.StreamHandler()
        _stream_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        package_logger.addHandler(_stream_handler)
    elif not verbose and _stream_handler is not None:
        package_logger.removeHandler(_stream_handler)
        _stream_handler = None


def recent_entries(min_level: int = logging.WARNING) -> list[LogEntry]:
    """Buffered entries at or above ``min_level``, oldest first."""
    return [
        entry
        for entry in log_buffer
        if logging.getLevelNamesMapping().get(entry.group, 0) >= min_level
    ]


def clear_log_buffer() -> None:
    global _buffer_generation
    log_buffer.clear()
    _buffer_generation += 1


def get_buffer_generation() -> int:
    """Get the current buffer generation (incremented on clear)."""
    return _buffer_generation


def export_logs_to_file(path: Path) -> int:
    """Write the buffer to ``path``; returns the number of entries written."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        f.write("# boardsync log export\n")
        f.write(f"# Total entries: {len(log_buffer)}\n\n")
        for entry in log_buffer:
            ts = datetime.fromtimestamp(entry.timestamp).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
            f.write(f"{ts} [{entry.group}] {entry.message}\n")
    return len(log_buffer)
