"""Core domain enums."""

from __future__ import annotations

from enum import StrEnum


class EntityKind(StrEnum):
    """Kinds of entities mirrored by the store and persisted by gateways."""

    BOARD = "boards"
    COLUMN = "columns"
    CARD = "cards"
    TAG = "tags"
    CARD_TAG = "card_tags"

    @property
    def label(self) -> str:
        """Singular human-readable label used in notices."""
        return {
            self.BOARD: "board",
            self.COLUMN: "column",
            self.CARD: "card",
            self.TAG: "tag",
            self.CARD_TAG: "tag",
        }[self]

    @property
    def parent_field(self) -> str | None:
        """Name of the field referencing the owning entity, if any."""
        return {
            self.COLUMN: "board_id",
            self.CARD: "column_id",
        }.get(self)


class DragState(StrEnum):
    """Drag-session resolver states."""

    IDLE = "IDLE"
    DRAGGING = "DRAGGING"


class DropKind(StrEnum):
    """Classified intent of a completed drag gesture."""

    REORDER = "REORDER"
    MOVE_TO_COLUMN = "MOVE_TO_COLUMN"
    MOVE_TO_COLUMN_END = "MOVE_TO_COLUMN_END"
    MOVE_TO_EMPTY_COLUMN = "MOVE_TO_EMPTY_COLUMN"
    CANCEL = "CANCEL"

    @property
    def is_move(self) -> bool:
        return self is not DropKind.CANCEL
