"""Shared service-layer types."""

from __future__ import annotations

from dataclasses import dataclass
from typing import NewType

_BoardId = NewType("_BoardId", str)
_ColumnId = NewType("_ColumnId", str)
_CardId = NewType("_CardId", str)
_TagId = NewType("_TagId", str)

type BoardId = _BoardId | str
type ColumnId = _ColumnId | str
type CardId = _CardId | str
type TagId = _TagId | str


@dataclass(frozen=True, slots=True)
class SyncResult[T]:
    """Outcome of an inbound mutation.

    ``value`` holds the resulting entity as known when the remote call settled
    (``None`` for deletes). ``error`` is set when the remote call failed and the
    optimistic change was reverted.
    """

    operation: str
    value: T | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def __bool__(self) -> bool:
        return self.ok
