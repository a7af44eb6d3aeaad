"""Numeric limits and defaults - no circular dependencies."""

from __future__ import annotations

MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 10_000
MAX_TAG_NAME_LENGTH = 50

DEFAULT_TAG_COLOR = "#64748b"

# Ring buffer size for the in-memory log viewer.
MAX_LOG_LINES = 2000
MAX_LOG_MESSAGE_LENGTH = 4000

# Events buffered per async subscriber before new ones are dropped.
EVENT_QUEUE_SIZE = 100
