"""Exception hierarchy."""

from __future__ import annotations


class BoardSyncError(Exception):
    """Base class for boardsync errors."""


class ValidationError(BoardSyncError, ValueError):
    """A request was rejected before any local or remote change.

    Raised for empty required fields, unknown fields, and references to
    entities that are not present in the store.
    """


class GatewayError(BoardSyncError):
    """A remote gateway call failed (network, storage, or rejection)."""

    def __init__(self, message: str, *, operation: str | None = None) -> None:
        super().__init__(message)
        self.operation = operation


class NotFoundError(GatewayError):
    """The gateway could not find the addressed row."""


class GatewayClosing(GatewayError):
    """Raised when a gateway call is attempted during shutdown."""
