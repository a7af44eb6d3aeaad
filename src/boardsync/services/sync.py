"""Synchronization engine: optimistic mutations over a remote gateway.

Every inbound mutation follows the same path:

1. validate against the current snapshot (``ValidationError`` on bad input);
2. compute the new entity states and commit them to the store at once;
3. reserve the per-entity lanes, then call the gateway in issue order;
4. reconcile authoritative values on success, or revert on failure.

Reconciliation is field-level. Server-owned fields (``id`` and timestamps)
are always adopted; client fields only while the entity's revision still
equals the one this operation produced. Reverts restore a field only where
the store still holds the value this operation wrote, so a later optimistic
change to the same entity survives an earlier failure.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from boardsync.errors import GatewayError, ValidationError
from boardsync.events import (
    BoardSelected,
    CardMoved,
    CardTagged,
    CardUntagged,
    EntityCreated,
    EntityDeleted,
    EntityUpdated,
    OperationFailed,
    OperationSucceeded,
)
from boardsync.limits import (
    DEFAULT_TAG_COLOR,
    MAX_DESCRIPTION_LENGTH,
    MAX_TAG_NAME_LENGTH,
    MAX_TITLE_LENGTH,
)
from boardsync.models.entities import SERVER_FIELDS, Board, Card, Column, Tag, card_tag_key, new_id
from boardsync.models.enums import EntityKind
from boardsync.positions import (
    changed_positions,
    move_across,
    next_position,
    ordered,
    renumber,
    reorder,
)
from boardsync.services.lanes import SerialLanes
from boardsync.services.types import SyncResult
from boardsync.store import (
    cascade,
    remove,
    replace_all,
    rekey,
    upsert,
    with_current_board,
    with_loading,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable, Sequence

    from boardsync.events import DomainEvent, EventBus
    from boardsync.gateway import RemoteGateway
    from boardsync.models.entities import Entity
    from boardsync.services.lanes import Lane
    from boardsync.store import EntityStore, Snapshot

    type Outcome = list[tuple[_Change, Entity | None]]

log = logging.getLogger(__name__)

CARD_UPDATE_FIELDS = frozenset({"title", "description"})
_VIEW_KINDS = frozenset({EntityKind.COLUMN, EntityKind.CARD})


@dataclass(slots=True)
class _Change:
    kind: EntityKind
    entity_id: str
    before: Entity | None
    after: Entity | None
    revision: int = 0

    @property
    def created(self) -> bool:
        return self.before is None

    @property
    def deleted(self) -> bool:
        return self.after is None


@dataclass(slots=True)
class _Mutation:
    operation: str
    success_message: str
    changes: list[_Change]
    epoch: int
    keys: list[str] = field(default_factory=list)


def _require_text(value: object, label: str, max_length: int = MAX_TITLE_LENGTH) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{label} is required")
    text = value.strip()
    if len(text) > max_length:
        raise ValidationError(f"{label} must be at most {max_length} characters")
    return text


def _decrement(counter: Counter[str], key: str) -> None:
    counter[key] -= 1
    if counter[key] <= 0:
        del counter[key]


def _failure_message(operation: str) -> str:
    return f"Failed to {operation}"


def _diff_fields(before: Entity, after: Entity) -> list[str]:
    return [
        name
        for name, value in after.mutable_fields().items()
        if getattr(before, name) != value
    ]


def _placement_fields(entity: Entity) -> tuple[str, ...]:
    parent_field = entity.kind.parent_field
    return (parent_field, "position") if parent_field is not None else ()


def _revert_fields(before: Entity, after: Entity, current: Entity) -> Entity:
    """Undo ``before -> after`` on ``current`` without clobbering later edits.

    Parent and position are one placement: both are restored only while both
    still hold what ``after`` wrote, otherwise a later move owns them.
    """
    updates: dict[str, Any] = {}
    changed = _diff_fields(before, after)
    placement = _placement_fields(after)
    if any(name in changed for name in placement) and all(
        getattr(current, name) == getattr(after, name) for name in placement
    ):
        updates.update({name: getattr(before, name) for name in placement})
    for name in changed:
        if name in placement:
            continue
        if name == "tag_ids":
            assert isinstance(before, Card) and isinstance(after, Card)
            assert isinstance(current, Card)
            added = set(after.tag_ids) - set(before.tag_ids)
            dropped = [t for t in before.tag_ids if t not in after.tag_ids]
            tag_ids = [t for t in current.tag_ids if t not in added]
            tag_ids.extend(t for t in dropped if t not in tag_ids)
            if tuple(tag_ids) != current.tag_ids:
                updates[name] = tuple(tag_ids)
        elif getattr(current, name) == getattr(after, name):
            updates[name] = getattr(before, name)
    updates = {name: value for name, value in updates.items() if getattr(current, name) != value}
    return current.model_copy(update=updates) if updates else current


class SyncEngine:
    """Applies board mutations optimistically and persists them remotely.

    The engine never raises for remote failures; callers inspect the returned
    :class:`SyncResult` and UIs listen for :class:`OperationFailed` events.
    """

    def __init__(
        self,
        store: EntityStore,
        gateway: RemoteGateway,
        event_bus: EventBus,
        *,
        notify_success: bool = True,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._events = event_bus
        self._notify_success = notify_success
        self._lanes = SerialLanes()
        self._aliases: dict[str, str] = {}
        self._failed_creates: set[str] = set()
        self._inflight: Counter[str] = Counter()
        self._inflight_deletes: Counter[str] = Counter()
        self._selections = 0
        self._closed = False

    @property
    def store(self) -> EntityStore:
        return self._store

    @property
    def snapshot(self) -> Snapshot:
        return self._store.snapshot

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Stop applying results. In-flight calls finish without touching state."""
        self._closed = True
        self._store.close()

    def resolve(self, entity_id: str) -> str:
        """Follow id re-keys performed by create reconciliation."""
        seen: set[str] = set()
        while entity_id in self._aliases and entity_id not in seen:
            seen.add(entity_id)
            entity_id = self._aliases[entity_id]
        return entity_id

    # ------------------------------------------------------------------
    # Bulk fetches
    # ------------------------------------------------------------------

    async def load(self) -> SyncResult[list[Board]]:
        """Initial load: boards and tags."""
        self._set_loading(True)
        try:
            boards = await self.list_boards()
            await self.list_tags()
        finally:
            self._set_loading(False)
        return boards

    async def list_boards(self) -> SyncResult[list[Board]]:
        try:
            fetched = await self._gateway.list(EntityKind.BOARD)
        except Exception as exc:  # quality-allow-broad-except
            return await self._fetch_failed("load boards", exc)
        snapshot = self._merge_fetched(self._store.snapshot, EntityKind.BOARD, fetched)
        self._store.commit(snapshot)
        return SyncResult("load boards", value=self._store.snapshot.ordered_boards())

    async def list_tags(self) -> SyncResult[list[Tag]]:
        try:
            fetched = await self._gateway.list(EntityKind.TAG)
        except Exception as exc:  # quality-allow-broad-except
            return await self._fetch_failed("load tags", exc)
        snapshot = self._merge_fetched(self._store.snapshot, EntityKind.TAG, fetched)
        self._store.commit(snapshot)
        return SyncResult("load tags", value=self._store.snapshot.ordered_tags())

    async def select_board(self, board_id: str | None) -> SyncResult[Board]:
        """Switch the board view; ``None`` deselects and clears columns and cards."""
        if board_id is None:
            self._store.commit(with_current_board(self._store.snapshot, None), new_view=True)
            await self._publish(BoardSelected(board_id=None))
            return SyncResult("select board")

        board_id = self.resolve(board_id)
        board = self._require(self._store.snapshot.board(board_id), "board", board_id)
        snapshot = self._store.snapshot
        if snapshot.current_board_id == board.id:
            # Refreshing the open board keeps the view, so in-flight work still lands.
            self._store.commit(with_loading(snapshot, True))
        else:
            snapshot = with_loading(with_current_board(snapshot, board.id), True)
            self._store.commit(snapshot, new_view=True)
        epoch = self._store.epoch
        self._selections += 1
        selection = self._selections

        try:
            fresh_boards = await self._gateway.list(EntityKind.BOARD, {"id": board.id})
            columns = await self._gateway.list(EntityKind.COLUMN, {"board_id": board.id})
            cards = await self._gateway.list(
                EntityKind.CARD, {"column_id": [c.id for c in columns]}
            )
        except Exception as exc:  # quality-allow-broad-except
            if self._selections == selection:
                self._store.commit(with_loading(self._store.snapshot, False))
            return await self._fetch_failed("load board data", exc)

        if self._store.epoch != epoch or self._selections != selection:
            log.info("Discarding data for board %s: superseded while loading", board.id)
            return SyncResult("select board", value=board)

        with self._store.batch():
            snapshot = self._store.snapshot
            if fresh_boards and not self._inflight[board.id]:
                snapshot = upsert(snapshot, *fresh_boards)
            snapshot = self._merge_fetched(snapshot, EntityKind.COLUMN, columns)
            snapshot = self._merge_fetched(snapshot, EntityKind.CARD, cards)
            self._store.commit(with_loading(snapshot, False))
        await self._publish(BoardSelected(board_id=board.id))
        return SyncResult("select board", value=self._store.snapshot.board(board.id) or board)

    # ------------------------------------------------------------------
    # Boards
    # ------------------------------------------------------------------

    async def create_board(self, title: str) -> SyncResult[Board]:
        board = Board(id=new_id(), title=_require_text(title, "Board title"))
        mutation = self._apply(
            "create board", "Board created", [_Change(EntityKind.BOARD, board.id, None, board)]
        )
        lane = self._reserve(mutation, [board.id])

        async def _steps() -> Outcome:
            created = await self._gateway.create(
                EntityKind.BOARD, {"id": board.id, "title": board.title}
            )
            return [(mutation.changes[0], created)]

        error = await self._settle(mutation, lane, _steps)
        if error is None:
            await self._publish(EntityCreated(EntityKind.BOARD, self.resolve(board.id)))
        return self._result(mutation, error, EntityKind.BOARD, board.id)

    async def update_board(self, board_id: str, *, title: str) -> SyncResult[Board]:
        board = self._require(self.snapshot.board(self.resolve(board_id)), "board", board_id)
        updated = board.model_copy(update={"title": _require_text(title, "Board title")})
        return await self._update_entity("rename board", "Board renamed", board, updated)

    async def delete_board(self, board_id: str) -> SyncResult[None]:
        board = self._require(self.snapshot.board(self.resolve(board_id)), "board", board_id)
        return await self._delete_entity("delete board", "Board deleted", board)

    # ------------------------------------------------------------------
    # Columns
    # ------------------------------------------------------------------

    async def create_column(self, title: str, board_id: str) -> SyncResult[Column]:
        title = _require_text(title, "Column title")
        snapshot = self.snapshot
        board = self._require(snapshot.board(self.resolve(board_id)), "board", board_id)
        if snapshot.current_board_id != board.id:
            raise ValidationError(f"Board {board.id} must be selected before adding columns")
        column = Column(
            id=new_id(),
            board_id=board.id,
            title=title,
            position=next_position(snapshot.columns_of(board.id)),
        )
        mutation = self._apply(
            "create column", "Column created", [_Change(EntityKind.COLUMN, column.id, None, column)]
        )
        lane = self._reserve(mutation, [column.id, board.id])

        async def _steps() -> Outcome:
            created = await self._gateway.create(
                EntityKind.COLUMN,
                {
                    "id": column.id,
                    "board_id": self.resolve(column.board_id),
                    "title": column.title,
                    "position": column.position,
                },
            )
            return [(mutation.changes[0], created)]

        error = await self._settle(mutation, lane, _steps)
        if error is None:
            await self._publish(EntityCreated(EntityKind.COLUMN, self.resolve(column.id)))
        return self._result(mutation, error, EntityKind.COLUMN, column.id)

    async def update_column(self, column_id: str, *, title: str) -> SyncResult[Column]:
        column = self._require(self.snapshot.column(self.resolve(column_id)), "column", column_id)
        updated = column.model_copy(update={"title": _require_text(title, "Column title")})
        return await self._update_entity("rename column", "Column renamed", column, updated)

    async def move_column(self, column_id: str, destination_index: int) -> SyncResult[Column]:
        snapshot = self.snapshot
        column = self._require(snapshot.column(self.resolve(column_id)), "column", column_id)
        siblings = snapshot.columns_of(column.board_id)
        plan = changed_positions(siblings, reorder(siblings, column.id, destination_index))
        updated = [
            c.model_copy(update={"position": plan[c.id]})
            for c in sorted(siblings, key=lambda c: c.id != column.id)
            if c.id in plan
        ]
        return await self._reposition("move column", "Column moved", column, updated)

    async def delete_column(self, column_id: str) -> SyncResult[None]:
        column = self._require(self.snapshot.column(self.resolve(column_id)), "column", column_id)
        return await self._delete_entity("delete column", "Column deleted", column)

    # ------------------------------------------------------------------
    # Cards
    # ------------------------------------------------------------------

    async def create_card(
        self, title: str, column_id: str, *, description: str | None = None
    ) -> SyncResult[Card]:
        title = _require_text(title, "Card title")
        if description is not None:
            description = self._check_description(description)
        snapshot = self.snapshot
        column = self._require(snapshot.column(self.resolve(column_id)), "column", column_id)
        card = Card(
            id=new_id(),
            column_id=column.id,
            title=title,
            description=description,
            position=next_position(snapshot.cards_in(column.id)),
        )
        mutation = self._apply(
            "create card", "Card created", [_Change(EntityKind.CARD, card.id, None, card)]
        )
        lane = self._reserve(mutation, [card.id, column.id])

        async def _steps() -> Outcome:
            created = await self._gateway.create(
                EntityKind.CARD,
                {
                    "id": card.id,
                    "column_id": self.resolve(card.column_id),
                    "title": card.title,
                    "description": card.description,
                    "position": card.position,
                },
            )
            return [(mutation.changes[0], created)]

        error = await self._settle(mutation, lane, _steps)
        if error is None:
            await self._publish(EntityCreated(EntityKind.CARD, self.resolve(card.id)))
        return self._result(mutation, error, EntityKind.CARD, card.id)

    async def update_card(self, card_id: str, **fields: Any) -> SyncResult[Card]:
        """Edit card details. Position and column changes go through :meth:`move_card`."""
        unknown = set(fields) - CARD_UPDATE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update card fields: {', '.join(sorted(unknown))}")
        card = self._require(self.snapshot.card(self.resolve(card_id)), "card", card_id)
        updates: dict[str, Any] = {}
        if "title" in fields:
            updates["title"] = _require_text(fields["title"], "Card title")
        if "description" in fields:
            description = fields["description"]
            updates["description"] = (
                None if description is None else self._check_description(description)
            )
        updated = card.model_copy(update=updates)
        return await self._update_entity("update card", "Card updated", card, updated)

    async def move_card(
        self,
        card_id: str,
        destination_column_id: str,
        destination_position: int | None = None,
    ) -> SyncResult[Card]:
        """Move a card to ``destination_position`` (display index) of a column.

        ``None`` appends. Every scope the move touches is renumbered to
        ``0..N-1`` and each changed sibling is persisted after the moved card.
        """
        snapshot = self.snapshot
        card = self._require(snapshot.card(self.resolve(card_id)), "card", card_id)
        destination = self._require(
            snapshot.column(self.resolve(destination_column_id)), "column", destination_column_id
        )
        if destination_position is not None and destination_position < 0:
            raise ValidationError("Destination position must not be negative")

        source_cards = snapshot.cards_in(card.column_id)
        if destination.id == card.column_id:
            index = len(source_cards) - 1 if destination_position is None else destination_position
            plan = reorder(source_cards, card.id, index)
            moved = card.model_copy(update={"position": plan[card.id]})
            siblings = source_cards
        else:
            destination_cards = snapshot.cards_in(destination.id)
            source_plan, destination_plan = move_across(
                source_cards, destination_cards, card.id, destination_position
            )
            plan = {**source_plan, **destination_plan}
            moved = card.model_copy(
                update={"column_id": destination.id, "position": destination_plan[card.id]}
            )
            siblings = [*source_cards, *destination_cards]

        changed = changed_positions(siblings, plan)
        changed.pop(card.id, None)
        updated = [moved] + [
            c.model_copy(update={"position": changed[c.id]}) for c in siblings if c.id in changed
        ]
        result = await self._reposition("move card", "Card moved", card, updated)
        if result.ok and moved != card:
            await self._publish(
                CardMoved(
                    card_id=self.resolve(card.id),
                    from_column_id=self.resolve(card.column_id),
                    to_column_id=self.resolve(moved.column_id),
                    position=moved.position,
                )
            )
        return result

    async def delete_card(self, card_id: str) -> SyncResult[None]:
        card = self._require(self.snapshot.card(self.resolve(card_id)), "card", card_id)
        return await self._delete_entity("delete card", "Card deleted", card)

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    async def create_tag(self, name: str, color: str = DEFAULT_TAG_COLOR) -> SyncResult[Tag]:
        tag = Tag(
            id=new_id(),
            name=_require_text(name, "Tag name", MAX_TAG_NAME_LENGTH),
            color=_require_text(color, "Tag color"),
        )
        mutation = self._apply(
            "create tag", "Tag created", [_Change(EntityKind.TAG, tag.id, None, tag)]
        )
        lane = self._reserve(mutation, [tag.id])

        async def _steps() -> Outcome:
            created = await self._gateway.create(
                EntityKind.TAG, {"id": tag.id, "name": tag.name, "color": tag.color}
            )
            return [(mutation.changes[0], created)]

        error = await self._settle(mutation, lane, _steps)
        if error is None:
            await self._publish(EntityCreated(EntityKind.TAG, self.resolve(tag.id)))
        return self._result(mutation, error, EntityKind.TAG, tag.id)

    async def delete_tag(self, tag_id: str) -> SyncResult[None]:
        snapshot = self.snapshot
        tag = self._require(snapshot.tag(self.resolve(tag_id)), "tag", tag_id)
        changes = [_Change(EntityKind.TAG, tag.id, tag, None)]
        for card in snapshot.cards.values():
            if tag.id in card.tag_ids:
                stripped = card.model_copy(
                    update={"tag_ids": tuple(t for t in card.tag_ids if t != tag.id)}
                )
                changes.append(_Change(EntityKind.CARD, card.id, card, stripped))
        mutation = self._apply("delete tag", "Tag deleted", changes)
        lane = self._reserve(mutation, [c.entity_id for c in changes])

        async def _steps() -> Outcome:
            await self._gateway.delete(EntityKind.TAG, self.resolve(tag.id))
            return []

        error = await self._settle(mutation, lane, _steps)
        if error is None:
            await self._publish(EntityDeleted(EntityKind.TAG, self.resolve(tag.id)))
        return SyncResult(mutation.operation, error=error)

    async def add_tag_to_card(self, card_id: str, tag_id: str) -> SyncResult[Card]:
        snapshot = self.snapshot
        card = self._require(snapshot.card(self.resolve(card_id)), "card", card_id)
        tag = self._require(snapshot.tag(self.resolve(tag_id)), "tag", tag_id)
        if tag.id in card.tag_ids:
            return SyncResult("add tag", value=card)
        tagged = card.model_copy(update={"tag_ids": (*card.tag_ids, tag.id)})
        mutation = self._apply(
            "add tag", "Tag added", [_Change(EntityKind.CARD, card.id, card, tagged)]
        )
        lane = self._reserve(mutation, [card.id, tag.id])

        async def _steps() -> Outcome:
            authoritative = await self._gateway.create(
                EntityKind.CARD_TAG,
                {"card_id": self.resolve(card.id), "tag_id": self.resolve(tag.id)},
            )
            return [(mutation.changes[0], authoritative)]

        error = await self._settle(mutation, lane, _steps)
        if error is None:
            await self._publish(
                CardTagged(card_id=self.resolve(card.id), tag_id=self.resolve(tag.id))
            )
        return self._result(mutation, error, EntityKind.CARD, card.id)

    async def remove_tag_from_card(self, card_id: str, tag_id: str) -> SyncResult[Card]:
        snapshot = self.snapshot
        card = self._require(snapshot.card(self.resolve(card_id)), "card", card_id)
        tag_id = self.resolve(tag_id)
        if tag_id not in card.tag_ids:
            return SyncResult("remove tag", value=card)
        untagged = card.model_copy(
            update={"tag_ids": tuple(t for t in card.tag_ids if t != tag_id)}
        )
        mutation = self._apply(
            "remove tag", "Tag removed", [_Change(EntityKind.CARD, card.id, card, untagged)]
        )
        lane = self._reserve(mutation, [card.id, tag_id])

        async def _steps() -> Outcome:
            await self._gateway.delete(
                EntityKind.CARD_TAG, card_tag_key(self.resolve(card.id), self.resolve(tag_id))
            )
            return []

        error = await self._settle(mutation, lane, _steps)
        if error is None:
            await self._publish(CardUntagged(card_id=self.resolve(card.id), tag_id=tag_id))
        return self._result(mutation, error, EntityKind.CARD, card.id)

    # ------------------------------------------------------------------
    # Shared mutation shapes
    # ------------------------------------------------------------------

    async def _update_entity(
        self, operation: str, success_message: str, before: Entity, after: Entity
    ) -> SyncResult[Any]:
        fields_changed = _diff_fields(before, after)
        if not fields_changed:
            return SyncResult(operation, value=before)
        mutation = self._apply(
            operation, success_message, [_Change(before.kind, before.id, before, after)]
        )
        lane = self._reserve(mutation, [before.id])
        payload = {name: getattr(after, name) for name in fields_changed}

        async def _steps() -> Outcome:
            authoritative = await self._gateway.update(
                before.kind, self.resolve(before.id), payload
            )
            return [(mutation.changes[0], authoritative)]

        error = await self._settle(mutation, lane, _steps)
        if error is None:
            await self._publish(
                EntityUpdated(before.kind, self.resolve(before.id), fields_changed)
            )
        return self._result(mutation, error, before.kind, before.id)

    async def _reposition(
        self,
        operation: str,
        success_message: str,
        entity: Column | Card,
        updated: Sequence[Column | Card],
    ) -> SyncResult[Any]:
        """Persist position changes; ``updated`` lists the moved entity first."""
        snapshot = self.snapshot
        changes = []
        for after in updated:
            before = snapshot.get(after.kind, after.id)
            if before is not None and before != after:
                changes.append(_Change(after.kind, after.id, before, after))
        if not changes:
            return SyncResult(operation, value=entity)
        mutation = self._apply(operation, success_message, changes)
        keys = [c.entity_id for c in changes]
        parent_field = entity.kind.parent_field
        if parent_field is not None:
            for change in changes:
                keys.append(getattr(change.before, parent_field))
                keys.append(getattr(change.after, parent_field))
        lane = self._reserve(mutation, keys)

        async def _steps() -> Outcome:
            outcome: Outcome = []
            for change in mutation.changes:
                assert change.before is not None and isinstance(change.after, (Column, Card))
                payload: dict[str, Any] = {
                    name: getattr(change.after, name)
                    for name in _diff_fields(change.before, change.after)
                }
                if parent_field is not None and parent_field in payload:
                    # A cross-parent move always states where it lands.
                    payload["position"] = change.after.position
                    payload[parent_field] = self.resolve(payload[parent_field])
                authoritative = await self._gateway.update(
                    change.kind, self.resolve(change.entity_id), payload
                )
                outcome.append((change, authoritative))
            return outcome

        error = await self._settle(mutation, lane, _steps)
        if error is None and len(changes) > 1:
            log.debug("%s renumbered %d siblings", operation, len(changes) - 1)
        return self._result(mutation, error, entity.kind, entity.id)

    async def _delete_entity(
        self, operation: str, success_message: str, entity: Entity
    ) -> SyncResult[None]:
        doomed = cascade(self.snapshot, entity.kind, entity.id)
        changes = [_Change(e.kind, e.id, e, None) for e in doomed]
        mutation = self._apply(operation, success_message, changes)
        keys = [c.entity_id for c in changes]
        parent_field = entity.kind.parent_field
        if parent_field is not None:
            keys.append(getattr(entity, parent_field))
        lane = self._reserve(mutation, keys)

        async def _steps() -> Outcome:
            await self._gateway.delete(entity.kind, self.resolve(entity.id))
            return []

        error = await self._settle(mutation, lane, _steps)
        if error is None:
            await self._publish(
                EntityDeleted(entity.kind, self.resolve(entity.id), cascaded=len(doomed) - 1)
            )
            self._forget_aliases(e.id for e in doomed)
        return SyncResult(operation, error=error)

    # ------------------------------------------------------------------
    # Optimistic apply, settle, reconcile, revert
    # ------------------------------------------------------------------

    def _apply(self, operation: str, success_message: str, changes: list[_Change]) -> _Mutation:
        snapshot = self._store.snapshot
        for change in changes:
            if change.after is None:
                snapshot = remove(snapshot, change.kind, change.entity_id)
            else:
                snapshot = upsert(snapshot, change.after)
        touched = [c.entity_id for c in changes]
        self._store.commit(snapshot, touched=touched)
        for change in changes:
            change.revision = self._store.revision(change.entity_id)
            self._inflight[change.entity_id] += 1
            if change.deleted:
                self._inflight_deletes[change.entity_id] += 1
        return _Mutation(operation, success_message, changes, self._store.epoch)

    def _reserve(self, mutation: _Mutation, keys: Iterable[str]) -> Lane:
        mutation.keys = [self.resolve(k) for k in keys]
        return self._lanes.reserve(mutation.keys)

    async def _settle(
        self,
        mutation: _Mutation,
        lane: Lane,
        steps: Callable[[], Awaitable[Outcome]],
    ) -> str | None:
        """Run the gateway calls for ``mutation``; returns an error message or None."""
        try:
            async with lane:
                try:
                    self._check_dependencies(mutation)
                    outcome = await steps()
                except GatewayError as exc:
                    log.warning("%s failed: %s", mutation.operation, exc)
                    return await self._fail(mutation, exc)
                except Exception as exc:  # quality-allow-broad-except
                    log.exception("%s failed with an unexpected error", mutation.operation)
                    return await self._fail(mutation, exc)
                self._reconcile(mutation, outcome)
        finally:
            for change in mutation.changes:
                _decrement(self._inflight, change.entity_id)
                if change.deleted:
                    _decrement(self._inflight_deletes, change.entity_id)
            for key in mutation.keys:
                if key in self._failed_creates and not self._lanes.busy(key):
                    self._failed_creates.discard(key)
        if self._notify_success:
            await self._publish(OperationSucceeded(mutation.operation, mutation.success_message))
        return None

    def _check_dependencies(self, mutation: _Mutation) -> None:
        missing = [key for key in mutation.keys if key in self._failed_creates]
        if missing:
            raise GatewayError(
                f"Depends on entity that was never persisted: {missing[0]}",
                operation=mutation.operation,
            )

    async def _fail(self, mutation: _Mutation, exc: BaseException) -> str:
        for change in mutation.changes:
            if change.created:
                self._failed_creates.add(change.entity_id)
        self._revert(mutation)
        message = str(exc) or exc.__class__.__name__
        await self._publish(
            OperationFailed(mutation.operation, _failure_message(mutation.operation), message)
        )
        return message

    def _live(self, mutation: _Mutation, kind: EntityKind) -> bool:
        if self._closed or self._store.closed:
            return False
        return kind not in _VIEW_KINDS or mutation.epoch == self._store.epoch

    def _reconcile(self, mutation: _Mutation, outcome: Outcome) -> None:
        with self._store.batch():
            for change, authoritative in outcome:
                if authoritative is None or not self._live(mutation, change.kind):
                    continue
                self._reconcile_one(change, authoritative)

    def _reconcile_one(self, change: _Change, authoritative: Entity) -> None:
        local_id = self.resolve(change.entity_id)
        kind = change.kind
        if authoritative.kind is not kind:
            log.warning(
                "Gateway returned a %s for a %s change; ignoring",
                authoritative.kind.label,
                kind.label,
            )
            return
        if authoritative.id != local_id and change.created:
            self._adopt_id(kind, local_id, authoritative.id)
            local_id = authoritative.id

        current = self._store.snapshot.get(kind, local_id)
        if current is None:
            log.warning(
                "Skipping reconciliation of %s %s: no longer in the store", kind.label, local_id
            )
            return

        fresh = self._store.revision(local_id) == change.revision
        updates: dict[str, Any] = {}
        for name in type(authoritative).model_fields:
            if name in ("id", "kind"):
                continue
            if name not in SERVER_FIELDS and not fresh:
                continue
            value = getattr(authoritative, name)
            if getattr(current, name) != value:
                updates[name] = value
        if not updates:
            return
        merged = current.model_copy(update=updates)
        snapshot = upsert(self._store.snapshot, merged)
        if fresh and "position" in updates:
            snapshot = self._repair_positions(snapshot, [merged])
        self._store.commit(snapshot)

    def _adopt_id(self, kind: EntityKind, old_id: str, new_id_: str) -> None:
        log.debug("Re-keying %s %s -> %s", kind.label, old_id, new_id_)
        self._aliases[old_id] = new_id_
        self._lanes.alias(old_id, new_id_)
        self._store.carry_revision(old_id, new_id_)
        self._store.commit(rekey(self._store.snapshot, kind, old_id, new_id_))

    def _forget_aliases(self, entity_ids: Iterable[str]) -> None:
        gone = {self.resolve(entity_id) for entity_id in entity_ids}
        self._aliases = {old: new for old, new in self._aliases.items() if new not in gone}

    def _revert(self, mutation: _Mutation) -> None:
        snapshot = self._store.snapshot
        touched: list[str] = []
        restored: list[Entity] = []
        for change in mutation.changes:
            if not self._live(mutation, change.kind):
                continue
            local_id = self.resolve(change.entity_id)
            current = snapshot.get(change.kind, local_id)
            if change.created:
                if current is not None:
                    snapshot = remove(snapshot, change.kind, local_id)
                    touched.append(local_id)
            elif change.deleted:
                assert change.before is not None
                if current is not None:
                    continue
                entity = change.before
                if not self._parent_present(snapshot, entity):
                    log.warning(
                        "Cannot restore %s %s: its parent is gone", entity.kind.label, entity.id
                    )
                    continue
                snapshot = upsert(snapshot, entity)
                touched.append(entity.id)
                restored.append(entity)
            else:
                assert change.before is not None and change.after is not None
                if current is None:
                    log.warning(
                        "Cannot revert %s %s: no longer in the store", change.kind.label, local_id
                    )
                    continue
                reverted = _revert_fields(change.before, change.after, current)
                if reverted is not current:
                    snapshot = upsert(snapshot, reverted)
                    touched.append(local_id)
                    restored.append(reverted)
        if not touched:
            return
        snapshot = self._repair_positions(snapshot, restored)
        self._store.commit(snapshot, touched=touched)

    @staticmethod
    def _parent_present(snapshot: Snapshot, entity: Entity) -> bool:
        if isinstance(entity, Column):
            return snapshot.board(entity.board_id) is not None
        if isinstance(entity, Card):
            return snapshot.column(entity.column_id) is not None
        return True

    @staticmethod
    def _repair_positions(snapshot: Snapshot, entities: Iterable[Entity]) -> Snapshot:
        """Renumber scopes that ended up with duplicate positions."""
        scopes: set[tuple[EntityKind, str]] = set()
        for entity in entities:
            if isinstance(entity, Column):
                scopes.add((EntityKind.COLUMN, entity.board_id))
            elif isinstance(entity, Card):
                scopes.add((EntityKind.CARD, entity.column_id))
        for kind, parent_id in scopes:
            siblings: list[Column] | list[Card] = (
                snapshot.columns_of(parent_id)
                if kind is EntityKind.COLUMN
                else snapshot.cards_in(parent_id)
            )
            positions = [s.position for s in siblings]
            if len(set(positions)) == len(positions):
                continue
            log.warning("Duplicate positions in %s scope %s; renumbering", kind.label, parent_id)
            plan = renumber(s.id for s in ordered(siblings))
            snapshot = upsert(
                snapshot,
                *(s.model_copy(update={"position": plan[s.id]}) for s in siblings),
            )
        return snapshot

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _merge_fetched(
        self, snapshot: Snapshot, kind: EntityKind, fetched: Iterable[Entity]
    ) -> Snapshot:
        """Replace a collection with fetched rows, keeping in-flight local state."""
        merged = {entity.id: entity for entity in fetched}
        current = snapshot.collection(kind)
        for entity_id in self._inflight:
            local = current.get(entity_id)
            if local is not None:
                merged[entity_id] = local
            elif self._inflight_deletes[entity_id]:
                merged.pop(entity_id, None)
        return replace_all(snapshot, kind, merged.values())

    def _set_loading(self, is_loading: bool) -> None:
        self._store.commit(with_loading(self._store.snapshot, is_loading))

    async def _fetch_failed(self, operation: str, exc: BaseException) -> SyncResult[Any]:
        if isinstance(exc, GatewayError):
            log.warning("%s failed: %s", operation, exc)
        else:
            log.exception("%s failed with an unexpected error", operation)
        message = str(exc) or exc.__class__.__name__
        await self._publish(OperationFailed(operation, _failure_message(operation), message))
        return SyncResult(operation, error=message)

    def _require[E: Entity](self, entity: E | None, label: str, entity_id: str) -> E:
        if not entity_id:
            raise ValidationError(f"A {label} id is required")
        if entity is None:
            raise ValidationError(f"Unknown {label}: {entity_id}")
        return entity

    @staticmethod
    def _check_description(description: object) -> str:
        if not isinstance(description, str):
            raise ValidationError("Card description must be text")
        if len(description) > MAX_DESCRIPTION_LENGTH:
            raise ValidationError(
                f"Card description must be at most {MAX_DESCRIPTION_LENGTH} characters"
            )
        return description

    def _result(
        self, mutation: _Mutation, error: str | None, kind: EntityKind, entity_id: str
    ) -> SyncResult[Any]:
        value = self._store.snapshot.get(kind, self.resolve(entity_id))
        if value is None and error is None:
            value = mutation.changes[0].after
        return SyncResult(mutation.operation, value=value, error=error)

    async def _publish(self, event: DomainEvent) -> None:
        if self._closed:
            return
        await self._events.publish(event)
