"""Drag-session resolver: turns drag gestures into card moves."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from boardsync.models.enums import DragState, DropKind
from boardsync.positions import index_of

if TYPE_CHECKING:
    from boardsync.models.entities import Card
    from boardsync.services.sync import SyncEngine
    from boardsync.services.types import SyncResult
    from boardsync.store import Snapshot

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DropIntent:
    """What a drop means. ``index`` is a display index; ``None`` appends."""

    kind: DropKind
    card_id: str | None = None
    column_id: str | None = None
    index: int | None = None

    @classmethod
    def cancel(cls, card_id: str | None = None) -> DropIntent:
        return cls(DropKind.CANCEL, card_id=card_id)


def classify_drop(snapshot: Snapshot, active_id: str | None, over_id: str | None) -> DropIntent:
    """Classify dropping card ``active_id`` onto ``over_id`` (a column or card id)."""
    if not active_id or not over_id or active_id == over_id:
        return DropIntent.cancel(active_id)
    active = snapshot.card(active_id)
    if active is None:
        return DropIntent.cancel(active_id)

    column = snapshot.column(over_id)
    if column is not None:
        others = [c for c in snapshot.cards_in(column.id) if c.id != active.id]
        if not others:
            return DropIntent(DropKind.MOVE_TO_EMPTY_COLUMN, active.id, column.id, 0)
        return DropIntent(DropKind.MOVE_TO_COLUMN_END, active.id, column.id, None)

    target = snapshot.card(over_id)
    if target is None:
        return DropIntent.cancel(active.id)
    siblings = snapshot.cards_in(target.column_id)
    index = index_of(siblings, target.id)
    if target.column_id == active.column_id:
        return DropIntent(DropKind.REORDER, active.id, target.column_id, index)
    return DropIntent(DropKind.MOVE_TO_COLUMN, active.id, target.column_id, index)


class DragSessionResolver:
    """Tracks one drag gesture at a time and delegates drops to the engine.

    ``IDLE --start--> DRAGGING --drop/cancel--> IDLE``
    """

    def __init__(self, engine: SyncEngine) -> None:
        self._engine = engine
        self._state = DragState.IDLE
        self._active_id: str | None = None

    @property
    def state(self) -> DragState:
        return self._state

    @property
    def active_card(self) -> Card | None:
        if self._active_id is None:
            return None
        return self._engine.snapshot.card(self._active_id)

    def start(self, card_id: str) -> bool:
        if self._state is DragState.DRAGGING:
            log.warning("Ignoring drag start for %s: already dragging %s", card_id, self._active_id)
            return False
        if self._engine.snapshot.card(card_id) is None:
            log.warning("Ignoring drag start for unknown card %s", card_id)
            return False
        self._state = DragState.DRAGGING
        self._active_id = card_id
        return True

    def classify(self, over_id: str | None) -> DropIntent:
        return classify_drop(self._engine.snapshot, self._active_id, over_id)

    async def drop(self, over_id: str | None) -> SyncResult[Card] | None:
        """Finish the gesture. Returns the move result, or None when nothing moved."""
        if self._state is not DragState.DRAGGING:
            log.warning("Ignoring drop without an active drag")
            return None
        intent = self.classify(over_id)
        self._reset()
        if not intent.kind.is_move:
            return None
        assert intent.card_id is not None and intent.column_id is not None
        log.debug("Drop %s: card %s -> column %s", intent.kind, intent.card_id, intent.column_id)
        return await self._engine.move_card(intent.card_id, intent.column_id, intent.index)

    def cancel(self) -> None:
        self._reset()

    def _reset(self) -> None:
        self._state = DragState.IDLE
        self._active_id = None
