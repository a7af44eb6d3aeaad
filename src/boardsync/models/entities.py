"""Core domain entities.

Entities are immutable snapshots of remote rows. The store and the sync engine
derive new instances with ``model_copy(update=...)`` instead of mutating them,
so any snapshot handed to an observer stays valid history.
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - Pydantic needs runtime access
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from boardsync.models.enums import EntityKind
from boardsync.time import utc_now

SERVER_FIELDS = frozenset({"id", "created_at", "updated_at"})


def new_id() -> str:
    """Generate a client-side id for an optimistically created entity."""
    return uuid4().hex


class DomainModel(BaseModel):
    """Base model with common config."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    kind: EntityKind

    def mutable_fields(self) -> dict[str, object]:
        """Fields owned by the client (everything except server-managed ones)."""
        return self.model_dump(exclude=SERVER_FIELDS | {"kind"})


class Board(DomainModel):
    """Root of a column/card tree."""

    kind: EntityKind = EntityKind.BOARD
    id: str
    title: str
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Column(DomainModel):
    """Ordered column of a board.

    Relationships: board (``board_id``), cards.
    """

    kind: EntityKind = EntityKind.COLUMN
    id: str
    board_id: str
    title: str
    position: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Card(DomainModel):
    """Ordered card within a column, tagged by reference.

    Relationships: column (``column_id``), tags (``tag_ids``).
    """

    kind: EntityKind = EntityKind.CARD
    id: str
    column_id: str
    title: str
    description: str | None = None
    position: int = Field(default=0, ge=0)
    tag_ids: tuple[str, ...] = ()
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("tag_ids", mode="before")
    @classmethod
    def _dedupe_tag_ids(cls, value: object) -> object:
        if value is None:
            return ()
        if isinstance(value, (list, tuple)):
            return tuple(dict.fromkeys(value))
        return value

    @property
    def short_id(self) -> str:
        return self.id[:8]


class Tag(DomainModel):
    """Global label attachable to any card."""

    kind: EntityKind = EntityKind.TAG
    id: str
    name: str
    color: str
    created_at: datetime = Field(default_factory=utc_now)


type Entity = Board | Column | Card | Tag

MODEL_FOR_KIND: dict[EntityKind, type[Board] | type[Column] | type[Card] | type[Tag]] = {
    EntityKind.BOARD: Board,
    EntityKind.COLUMN: Column,
    EntityKind.CARD: Card,
    EntityKind.TAG: Tag,
}


def card_tag_key(card_id: str, tag_id: str) -> str:
    """Composite key addressing one card/tag association."""
    return f"{card_id}:{tag_id}"


def split_card_tag_key(key: str) -> tuple[str, str]:
    """Inverse of :func:`card_tag_key`."""
    card_id, sep, tag_id = key.partition(":")
    if not sep or not card_id or not tag_id:
        raise ValueError(f"Malformed card tag key: {key!r}")
    return card_id, tag_id
