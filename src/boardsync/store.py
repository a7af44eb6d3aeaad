"""Entity store: immutable board snapshots plus an observable holder.

The module has two layers:

* pure functions (``upsert``, ``remove``, ``replace_all``, ``rekey`` ...) that
  take a :class:`Snapshot` and return a new one without touching the input;
* :class:`EntityStore`, which owns the current snapshot, per-entity revision
  counters and the observer list, and notifies observers once per commit.

The store mirrors every known board and tag, and the columns and cards of the
board views that have been loaded (normally only the selected board).
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import TYPE_CHECKING

from boardsync.errors import ValidationError
from boardsync.models.entities import Board, Card, Column, Tag
from boardsync.models.enums import EntityKind

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator, Mapping

    from boardsync.models.entities import Entity

    type Observer = Callable[[Snapshot], None]

log = logging.getLogger(__name__)

_COLLECTIONS: dict[EntityKind, str] = {
    EntityKind.BOARD: "boards",
    EntityKind.COLUMN: "columns",
    EntityKind.CARD: "cards",
    EntityKind.TAG: "tags",
}


def _frozen[T](items: Mapping[str, T] | None = None) -> Mapping[str, T]:
    return MappingProxyType(dict(items or {}))


def _by_position[T: (Column, Card)](items: Iterable[T]) -> list[T]:
    # sorted() is stable, so equal positions keep insertion order.
    return sorted(items, key=lambda item: item.position)


@dataclass(frozen=True, slots=True)
class Snapshot:
    """One consistent, read-only view of every mirrored entity."""

    boards: Mapping[str, Board] = field(default_factory=_frozen)
    columns: Mapping[str, Column] = field(default_factory=_frozen)
    cards: Mapping[str, Card] = field(default_factory=_frozen)
    tags: Mapping[str, Tag] = field(default_factory=_frozen)
    current_board_id: str | None = None
    is_loading: bool = False

    def collection(self, kind: EntityKind) -> Mapping[str, Entity]:
        try:
            return getattr(self, _COLLECTIONS[kind])
        except KeyError:
            raise ValueError(f"{kind} is not stored in snapshots") from None

    def get(self, kind: EntityKind, entity_id: str) -> Entity | None:
        return self.collection(kind).get(entity_id)

    def board(self, board_id: str) -> Board | None:
        return self.boards.get(board_id)

    def column(self, column_id: str) -> Column | None:
        return self.columns.get(column_id)

    def card(self, card_id: str) -> Card | None:
        return self.cards.get(card_id)

    def tag(self, tag_id: str) -> Tag | None:
        return self.tags.get(tag_id)

    @property
    def current_board(self) -> Board | None:
        if self.current_board_id is None:
            return None
        return self.boards.get(self.current_board_id)

    def columns_of(self, board_id: str) -> list[Column]:
        """Columns of a board ordered by position."""
        return _by_position(c for c in self.columns.values() if c.board_id == board_id)

    def cards_in(self, column_id: str) -> list[Card]:
        """Cards of a column ordered by position."""
        return _by_position(c for c in self.cards.values() if c.column_id == column_id)

    def ordered_boards(self) -> list[Board]:
        """Boards newest first."""
        return sorted(self.boards.values(), key=lambda b: b.created_at, reverse=True)

    def ordered_tags(self) -> list[Tag]:
        return sorted(self.tags.values(), key=lambda t: t.name.casefold())

    def board_columns(self) -> list[Column]:
        """Columns of the current board ordered by position."""
        if self.current_board_id is None:
            return []
        return self.columns_of(self.current_board_id)

    def board_cards(self) -> list[Card]:
        """Cards of the current board, column by column, each ordered by position."""
        return [card for column in self.board_columns() for card in self.cards_in(column.id)]


# ---------------------------------------------------------------------------
# Pure snapshot functions
# ---------------------------------------------------------------------------


def upsert(snapshot: Snapshot, *entities: Entity) -> Snapshot:
    """Insert or replace entities, keyed by id."""
    if not entities:
        return snapshot
    staged: dict[EntityKind, dict[str, Entity]] = {}
    for entity in entities:
        if not entity.id:
            raise ValidationError(f"Cannot store a {entity.kind.label} without an id")
        bucket = staged.get(entity.kind)
        if bucket is None:
            bucket = staged[entity.kind] = dict(snapshot.collection(entity.kind))
        bucket[entity.id] = entity
    return replace(
        snapshot,
        **{_COLLECTIONS[kind]: _frozen(bucket) for kind, bucket in staged.items()},
    )


def cascade(snapshot: Snapshot, kind: EntityKind, *ids: str) -> list[Entity]:
    """Entities a removal of ``ids`` would take out, parents before children."""
    removed: list[Entity] = []
    collection = snapshot.collection(kind)
    roots = [collection[i] for i in dict.fromkeys(ids) if i in collection]
    removed.extend(roots)
    column_ids: list[str] = []
    if kind is EntityKind.BOARD:
        board_ids = {b.id for b in roots}
        columns = [c for c in snapshot.columns.values() if c.board_id in board_ids]
        removed.extend(columns)
        column_ids = [c.id for c in columns]
    elif kind is EntityKind.COLUMN:
        column_ids = [c.id for c in roots]
    if column_ids:
        wanted = set(column_ids)
        removed.extend(c for c in snapshot.cards.values() if c.column_id in wanted)
    return removed


def remove(snapshot: Snapshot, kind: EntityKind, *ids: str) -> Snapshot:
    """Remove entities with cascade. Unknown ids are ignored."""
    doomed = cascade(snapshot, kind, *ids)
    if not doomed:
        return snapshot
    gone: dict[EntityKind, set[str]] = {}
    for entity in doomed:
        gone.setdefault(entity.kind, set()).add(entity.id)

    changes: dict[str, object] = {}
    for doomed_kind, doomed_ids in gone.items():
        kept = {k: v for k, v in snapshot.collection(doomed_kind).items() if k not in doomed_ids}
        changes[_COLLECTIONS[doomed_kind]] = _frozen(kept)

    if kind is EntityKind.TAG:
        tag_ids = gone[EntityKind.TAG]
        changes["cards"] = _frozen(
            {
                card_id: (
                    card.model_copy(
                        update={"tag_ids": tuple(t for t in card.tag_ids if t not in tag_ids)}
                    )
                    if tag_ids.intersection(card.tag_ids)
                    else card
                )
                for card_id, card in snapshot.cards.items()
            }
        )

    if snapshot.current_board_id in gone.get(EntityKind.BOARD, ()):
        changes["current_board_id"] = None
    return replace(snapshot, **changes)


def replace_all(snapshot: Snapshot, kind: EntityKind, entities: Iterable[Entity]) -> Snapshot:
    """Swap the whole collection of ``kind`` for ``entities``."""
    bucket: dict[str, Entity] = {}
    for entity in entities:
        if not entity.id:
            raise ValidationError(f"Cannot store a {entity.kind.label} without an id")
        if entity.kind is not kind:
            raise ValueError(f"Expected {kind} entities, got {entity.kind}")
        bucket[entity.id] = entity
    return replace(snapshot, **{_COLLECTIONS[kind]: _frozen(bucket)})


def rekey(snapshot: Snapshot, kind: EntityKind, old_id: str, new_id: str) -> Snapshot:
    """Move an entity to a new id and rewrite every reference to it."""
    if old_id == new_id or not new_id:
        return snapshot
    collection = snapshot.collection(kind)
    entity = collection.get(old_id)
    if entity is None:
        return snapshot
    bucket = {(new_id if k == old_id else k): v for k, v in collection.items()}
    bucket[new_id] = entity.model_copy(update={"id": new_id})
    changes: dict[str, object] = {_COLLECTIONS[kind]: _frozen(bucket)}

    if kind is EntityKind.BOARD:
        changes["columns"] = _frozen(
            {
                k: c.model_copy(update={"board_id": new_id}) if c.board_id == old_id else c
                for k, c in snapshot.columns.items()
            }
        )
        if snapshot.current_board_id == old_id:
            changes["current_board_id"] = new_id
    elif kind is EntityKind.COLUMN:
        changes["cards"] = _frozen(
            {
                k: c.model_copy(update={"column_id": new_id}) if c.column_id == old_id else c
                for k, c in snapshot.cards.items()
            }
        )
    elif kind is EntityKind.TAG:
        changes["cards"] = _frozen(
            {
                k: (
                    c.model_copy(
                        update={"tag_ids": tuple(new_id if t == old_id else t for t in c.tag_ids)}
                    )
                    if old_id in c.tag_ids
                    else c
                )
                for k, c in snapshot.cards.items()
            }
        )
    return replace(snapshot, **changes)


def with_loading(snapshot: Snapshot, is_loading: bool) -> Snapshot:
    if snapshot.is_loading == is_loading:
        return snapshot
    return replace(snapshot, is_loading=is_loading)


def with_current_board(snapshot: Snapshot, board_id: str | None) -> Snapshot:
    """Select a board view. Columns and cards of the previous view are dropped."""
    return replace(
        snapshot,
        current_board_id=board_id,
        columns=_frozen(),
        cards=_frozen(),
    )


# ---------------------------------------------------------------------------
# Observable holder
# ---------------------------------------------------------------------------


class EntityStore:
    """Holds the current snapshot and notifies observers on every transition.

    Revisions are per-entity counters bumped on every commit that touches the
    entity. The sync engine compares them to decide whether a late remote
    result is stale. The epoch advances whenever the board view is swapped.
    """

    def __init__(self, snapshot: Snapshot | None = None) -> None:
        self._snapshot = snapshot or Snapshot()
        self._revisions: dict[str, int] = {}
        self._observers: list[Observer] = []
        self._batch_depth = 0
        self._dirty = False
        self._epoch = 0
        self._closed = False

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def closed(self) -> bool:
        return self._closed

    def revision(self, entity_id: str) -> int:
        return self._revisions.get(entity_id, 0)

    def commit(
        self,
        snapshot: Snapshot,
        *,
        touched: Iterable[str] = (),
        new_view: bool = False,
    ) -> bool:
        """Replace the current snapshot. Returns False if the store is closed."""
        if self._closed:
            log.debug("Ignoring commit to a closed entity store")
            return False
        for entity_id in touched:
            self._revisions[entity_id] = self._revisions.get(entity_id, 0) + 1
        if new_view:
            self._epoch += 1
        if snapshot is self._snapshot:
            return True
        self._snapshot = snapshot
        if self._batch_depth:
            self._dirty = True
        else:
            self._notify()
        return True

    def carry_revision(self, old_id: str, new_id: str) -> None:
        """Transfer revision history when an entity is re-keyed."""
        if old_id in self._revisions:
            self._revisions[new_id] = self._revisions.pop(old_id)

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Coalesce commits inside the block into a single notification."""
        self._batch_depth += 1
        try:
            yield
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0 and self._dirty:
                self._dirty = False
                if not self._closed:
                    self._notify()

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register an observer; returns a callable that unregisters it."""
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    def close(self) -> None:
        """Tear the store down. Later commits become no-ops."""
        self._closed = True
        self._observers.clear()

    def _notify(self) -> None:
        snapshot = self._snapshot
        for observer in list(self._observers):
            try:
                observer(snapshot)
            except Exception:  # quality-allow-broad-except
                log.exception("Snapshot observer %r failed", observer)
