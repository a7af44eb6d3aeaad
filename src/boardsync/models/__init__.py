"""Domain models."""

from boardsync.models.entities import (
    MODEL_FOR_KIND,
    SERVER_FIELDS,
    Board,
    Card,
    Column,
    Entity,
    Tag,
    card_tag_key,
    new_id,
    split_card_tag_key,
)
from boardsync.models.enums import DragState, DropKind, EntityKind

__all__ = [
    "MODEL_FOR_KIND",
    "SERVER_FIELDS",
    "Board",
    "Card",
    "Column",
    "DragState",
    "DropKind",
    "Entity",
    "EntityKind",
    "Tag",
    "card_tag_key",
    "new_id",
    "split_card_tag_key",
]
