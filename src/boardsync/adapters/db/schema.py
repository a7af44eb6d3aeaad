"""SQLModel schema for persisted boards."""

# NOTE: Avoid `from __future__ import annotations` because SQLModel evaluates
# field annotations at class creation time.

from datetime import datetime

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from boardsync.models.entities import new_id
from boardsync.time import utc_now


class BoardRow(SQLModel, table=True):
    """Persisted board."""

    __tablename__ = "boards"  # type: ignore[bad-override]

    id: str = Field(default_factory=new_id, primary_key=True)
    title: str
    created_at: datetime = Field(default_factory=utc_now, index=True)
    updated_at: datetime = Field(default_factory=utc_now)


class ColumnRow(SQLModel, table=True):
    """Persisted column, ordered by ``position`` within its board."""

    __tablename__ = "columns"  # type: ignore[bad-override]

    id: str = Field(default_factory=new_id, primary_key=True)
    board_id: str = Field(foreign_key="boards.id", index=True)
    title: str
    position: int = Field(default=0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class CardRow(SQLModel, table=True):
    """Persisted card, ordered by ``position`` within its column."""

    __tablename__ = "cards"  # type: ignore[bad-override]

    id: str = Field(default_factory=new_id, primary_key=True)
    column_id: str = Field(foreign_key="columns.id", index=True)
    title: str
    description: str | None = Field(default=None)
    position: int = Field(default=0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class TagRow(SQLModel, table=True):
    """Persisted global tag."""

    __tablename__ = "tags"  # type: ignore[bad-override]

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = Field(index=True)
    color: str
    created_at: datetime = Field(default_factory=utc_now)


class CardTagRow(SQLModel, table=True):
    """Card/tag association. ``id`` preserves attach order."""

    __tablename__ = "card_tags"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("card_id", "tag_id"),)

    id: int | None = Field(default=None, primary_key=True)
    card_id: str = Field(foreign_key="cards.id", index=True)
    tag_id: str = Field(foreign_key="tags.id", index=True)
    created_at: datetime = Field(default_factory=utc_now)
