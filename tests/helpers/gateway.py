"""Scriptable in-memory gateway for engine tests."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from boardsync.errors import GatewayError, NotFoundError
from boardsync.models.entities import (
    MODEL_FOR_KIND,
    Board,
    Card,
    Column,
    Tag,
    new_id,
    split_card_tag_key,
)
from boardsync.models.enums import EntityKind
from boardsync.time import utc_now

if TYPE_CHECKING:
    from collections.abc import Mapping

    from boardsync.models.entities import Entity


@dataclass
class Gate:
    """Holds one matching gateway call until :meth:`release` is called."""

    method: str | None
    kind: EntityKind | None
    entered: asyncio.Event = field(default_factory=asyncio.Event)
    _released: asyncio.Event = field(default_factory=asyncio.Event)

    def matches(self, method: str, kind: EntityKind) -> bool:
        return (self.method is None or self.method == method) and (
            self.kind is None or self.kind is kind
        )

    def release(self) -> None:
        self._released.set()

    async def wait(self) -> None:
        self.entered.set()
        await self._released.wait()


@dataclass
class _Failure:
    method: str | None
    kind: EntityKind | None
    error: Exception

    def matches(self, method: str, kind: EntityKind) -> bool:
        return (self.method is None or self.method == method) and (
            self.kind is None or self.kind is kind
        )


class FakeGateway:
    """In-memory ``RemoteGateway`` with failure injection and gated latency.

    ``server_ids=True`` makes ``create`` ignore client ids and assign its own,
    exercising re-keying in the engine.
    """

    def __init__(self, *, server_ids: bool = False) -> None:
        self.rows: dict[EntityKind, dict[str, Entity]] = {
            kind: {}
            for kind in (EntityKind.BOARD, EntityKind.COLUMN, EntityKind.CARD, EntityKind.TAG)
        }
        self.calls: list[tuple[str, EntityKind, Any]] = []
        self.server_ids = server_ids
        self.closed = False
        self._failures: list[_Failure] = []
        self._gates: list[Gate] = []
        self._clock = utc_now()

    # -- scripting -------------------------------------------------------

    def fail_next(
        self,
        method: str | None = None,
        kind: EntityKind | None = None,
        error: Exception | None = None,
    ) -> None:
        """Make the next matching call raise ``error`` (a ``GatewayError`` by default)."""
        self._failures.append(
            _Failure(method, kind, error or GatewayError(f"injected {method or 'call'} failure"))
        )

    def hold(self, method: str | None = None, kind: EntityKind | None = None) -> Gate:
        """Block the next matching call until the returned gate is released."""
        gate = Gate(method, kind)
        self._gates.append(gate)
        return gate

    def seed(self, *entities: Entity) -> None:
        for entity in entities:
            self.rows[entity.kind][entity.id] = entity

    def calls_for(self, method: str, kind: EntityKind | None = None) -> list[Any]:
        return [
            payload
            for call_method, call_kind, payload in self.calls
            if call_method == method and (kind is None or call_kind is kind)
        ]

    def _now(self) -> Any:
        self._clock += timedelta(milliseconds=1)
        return self._clock

    async def _enter(self, method: str, kind: EntityKind, payload: Any) -> None:
        self.calls.append((method, kind, payload))
        for gate in self._gates:
            if gate.matches(method, kind):
                self._gates.remove(gate)
                await gate.wait()
                break
        for failure in self._failures:
            if failure.matches(method, kind):
                self._failures.remove(failure)
                raise failure.error

    # -- RemoteGateway ---------------------------------------------------

    async def create(self, kind: EntityKind, fields: Mapping[str, Any]) -> Entity:
        await self._enter("create", kind, dict(fields))
        if kind is EntityKind.CARD_TAG:
            card = self._get(EntityKind.CARD, fields["card_id"])
            self._get(EntityKind.TAG, fields["tag_id"])
            assert isinstance(card, Card)
            if fields["tag_id"] not in card.tag_ids:
                card = card.model_copy(update={"tag_ids": (*card.tag_ids, fields["tag_id"])})
                self.rows[EntityKind.CARD][card.id] = card
            return card

        values = dict(fields)
        if self.server_ids or not values.get("id"):
            values["id"] = f"srv-{new_id()[:12]}"
        if kind is EntityKind.COLUMN:
            self._get(EntityKind.BOARD, values["board_id"])
        elif kind is EntityKind.CARD:
            self._get(EntityKind.COLUMN, values["column_id"])
        now = self._now()
        values["created_at"] = now
        if kind is not EntityKind.TAG:
            values["updated_at"] = now
        entity = MODEL_FOR_KIND[kind].model_validate(values)
        self.rows[kind][entity.id] = entity
        return entity

    async def update(
        self, kind: EntityKind, entity_id: str, fields: Mapping[str, Any]
    ) -> Entity | None:
        await self._enter("update", kind, (entity_id, dict(fields)))
        current = self._get(kind, entity_id)
        if "column_id" in fields:
            self._get(EntityKind.COLUMN, fields["column_id"])
        updated = current.model_copy(update={**fields, "updated_at": self._now()})
        self.rows[kind][entity_id] = updated
        return updated

    async def delete(self, kind: EntityKind, entity_id: str) -> None:
        await self._enter("delete", kind, entity_id)
        if kind is EntityKind.CARD_TAG:
            card_id, tag_id = split_card_tag_key(entity_id)
            card = self._get(EntityKind.CARD, card_id)
            assert isinstance(card, Card)
            self.rows[EntityKind.CARD][card_id] = card.model_copy(
                update={"tag_ids": tuple(t for t in card.tag_ids if t != tag_id)}
            )
            return
        if kind is EntityKind.BOARD:
            column_ids = [
                c.id
                for c in self.rows[EntityKind.COLUMN].values()
                if isinstance(c, Column) and c.board_id == entity_id
            ]
            for column_id in column_ids:
                self._drop_column(column_id)
        elif kind is EntityKind.COLUMN:
            self._drop_column(entity_id)
        elif kind is EntityKind.TAG:
            for card in list(self.rows[EntityKind.CARD].values()):
                assert isinstance(card, Card)
                if entity_id in card.tag_ids:
                    self.rows[EntityKind.CARD][card.id] = card.model_copy(
                        update={"tag_ids": tuple(t for t in card.tag_ids if t != entity_id)}
                    )
        self.rows[kind].pop(entity_id, None)

    async def list(
        self, kind: EntityKind, filters: Mapping[str, Any] | None = None
    ) -> list[Entity]:
        await self._enter("list", kind, dict(filters or {}))
        items = list(self.rows[kind].values())
        for name, wanted in (filters or {}).items():
            if isinstance(wanted, (list, tuple, set)):
                items = [item for item in items if getattr(item, name) in wanted]
            else:
                items = [item for item in items if getattr(item, name) == wanted]
        if kind is EntityKind.BOARD:
            return sorted(items, key=lambda b: b.created_at, reverse=True)
        if kind is EntityKind.TAG:
            return sorted(items, key=lambda t: t.name.casefold())  # type: ignore[union-attr]
        return sorted(items, key=lambda item: item.position)  # type: ignore[union-attr]

    async def close(self) -> None:
        self.closed = True

    # -- internals -------------------------------------------------------

    def _get(self, kind: EntityKind, entity_id: str) -> Entity:
        entity = self.rows[kind].get(entity_id)
        if entity is None:
            raise NotFoundError(f"{kind.label} not found: {entity_id}")
        return entity

    def _drop_column(self, column_id: str) -> None:
        for card in list(self.rows[EntityKind.CARD].values()):
            if isinstance(card, Card) and card.column_id == column_id:
                del self.rows[EntityKind.CARD][card.id]
        self.rows[EntityKind.COLUMN].pop(column_id, None)


def make_board(title: str = "Board", **kwargs: Any) -> Board:
    return Board(id=kwargs.pop("id", new_id()), title=title, **kwargs)


def make_column(board_id: str, title: str, position: int, **kwargs: Any) -> Column:
    return Column(
        id=kwargs.pop("id", new_id()), board_id=board_id, title=title, position=position, **kwargs
    )


def make_card(column_id: str, title: str, position: int, **kwargs: Any) -> Card:
    return Card(
        id=kwargs.pop("id", new_id()), column_id=column_id, title=title, position=position, **kwargs
    )


def make_tag(name: str, color: str = "#ef4444", **kwargs: Any) -> Tag:
    return Tag(id=kwargs.pop("id", new_id()), name=name, color=color, **kwargs)
