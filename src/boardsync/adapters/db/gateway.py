"""Remote gateway over SQLModel tables on async SQLite."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlmodel import col, delete, select

from boardsync.adapters.db.base import ClosingAwareSessionFactory
from boardsync.adapters.db.engine import create_db_engine, create_db_tables
from boardsync.adapters.db.schema import BoardRow, CardRow, CardTagRow, ColumnRow, TagRow
from boardsync.errors import GatewayError, NotFoundError
from boardsync.models.entities import MODEL_FOR_KIND, Card, split_card_tag_key
from boardsync.models.enums import EntityKind
from boardsync.paths import get_database_path
from boardsync.time import utc_now

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable, Mapping, Sequence

    from sqlmodel import SQLModel

    from boardsync.models.entities import Entity

log = logging.getLogger(__name__)

_ROWS: dict[EntityKind, type[BoardRow] | type[ColumnRow] | type[CardRow] | type[TagRow]] = {
    EntityKind.BOARD: BoardRow,
    EntityKind.COLUMN: ColumnRow,
    EntityKind.CARD: CardRow,
    EntityKind.TAG: TagRow,
}

_WRITABLE: dict[EntityKind, frozenset[str]] = {
    EntityKind.BOARD: frozenset({"title"}),
    EntityKind.COLUMN: frozenset({"title", "position"}),
    EntityKind.CARD: frozenset({"title", "description", "position", "column_id"}),
    EntityKind.TAG: frozenset({"name", "color"}),
}


def _aware(value: datetime) -> datetime:
    # SQLite drops tzinfo; stored values are UTC.
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def _to_entity(kind: EntityKind, row: SQLModel, tag_ids: Sequence[str] = ()) -> Entity:
    data = row.model_dump()
    for name in ("created_at", "updated_at"):
        if isinstance(data.get(name), datetime):
            data[name] = _aware(data[name])
    if kind is EntityKind.CARD:
        data["tag_ids"] = tuple(tag_ids)
    return MODEL_FOR_KIND[kind].model_validate(data)


@asynccontextmanager
async def _translate_errors(operation: str) -> AsyncIterator[None]:
    try:
        yield
    except GatewayError:
        raise
    except SQLAlchemyError as exc:
        log.warning("Database error during %s: %s", operation, exc)
        raise GatewayError(str(exc), operation=operation) from exc


class SqlGateway:
    """Async gateway persisting boards, columns, cards and tags in SQLite."""

    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = Path(db_path) if db_path else get_database_path()
        self._engine: AsyncEngine | None = None
        self._session_factory: ClosingAwareSessionFactory | None = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize engine and create tables."""
        self._engine = await create_db_engine(self.db_path)
        raw_factory = async_sessionmaker(self._engine, class_=AsyncSession, expire_on_commit=False)
        self._session_factory = ClosingAwareSessionFactory(raw_factory, str(self.db_path))
        await create_db_tables(self._engine)

    async def close(self) -> None:
        """Close engine and release resources."""
        if self._session_factory is not None:
            self._session_factory.mark_closing()
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None

    def mark_closing(self) -> None:
        """Signal that shutdown has started."""
        if self._session_factory is not None:
            self._session_factory.mark_closing()

    def _get_session(self) -> AsyncSession:
        if self._session_factory is None:
            raise GatewayError("Gateway not initialized")
        return self._session_factory()

    async def create(self, kind: EntityKind, fields: Mapping[str, Any]) -> Entity:
        """Insert a row. A client-supplied ``id`` is kept."""
        if kind is EntityKind.CARD_TAG:
            return await self._attach_tag(str(fields["card_id"]), str(fields["tag_id"]))
        row_model = _ROWS[kind]
        values = {k: v for k, v in fields.items() if k in row_model.model_fields}
        if not values.get("id"):
            values.pop("id", None)
        now = utc_now()
        async with _translate_errors(f"create {kind.label}"):
            async with self._lock:
                async with self._get_session() as session:
                    row = row_model(**values)
                    row.created_at = now
                    if hasattr(row, "updated_at"):
                        row.updated_at = now
                    session.add(row)
                    await session.commit()
                    await session.refresh(row)
        log.debug("Created %s %s", kind.label, row.id)
        return _to_entity(kind, row)

    async def update(
        self, kind: EntityKind, entity_id: str, fields: Mapping[str, Any]
    ) -> Entity | None:
        """Apply a partial update and return the stored entity."""
        if kind is EntityKind.CARD_TAG:
            raise GatewayError("Card tags cannot be updated", operation="update tag")
        unknown = set(fields) - _WRITABLE[kind]
        if unknown:
            raise GatewayError(
                f"Cannot update {kind.label} fields: {', '.join(sorted(unknown))}",
                operation=f"update {kind.label}",
            )
        async with _translate_errors(f"update {kind.label}"):
            async with self._lock:
                async with self._get_session() as session:
                    row = await session.get(_ROWS[kind], entity_id)
                    if row is None:
                        raise NotFoundError(
                            f"{kind.label.capitalize()} not found: {entity_id}",
                            operation=f"update {kind.label}",
                        )
                    row.sqlmodel_update(dict(fields))
                    if hasattr(row, "updated_at"):
                        row.updated_at = utc_now()
                    session.add(row)
                    await session.commit()
                    await session.refresh(row)
                    tag_ids = (
                        await self._tag_ids(session, [entity_id])
                        if kind is EntityKind.CARD
                        else {}
                    )
        return _to_entity(kind, row, tag_ids.get(entity_id, ()))

    async def delete(self, kind: EntityKind, entity_id: str) -> None:
        """Delete a row and its dependents. Deleting a missing row is a no-op."""
        if kind is EntityKind.CARD_TAG:
            try:
                card_id, tag_id = split_card_tag_key(entity_id)
            except ValueError as exc:
                raise GatewayError(str(exc), operation="remove tag") from exc
        async with _translate_errors(f"delete {kind.label}"):
            async with self._lock:
                async with self._get_session() as session:
                    if kind is EntityKind.CARD_TAG:
                        await session.execute(
                            delete(CardTagRow).where(
                                col(CardTagRow.card_id) == card_id,
                                col(CardTagRow.tag_id) == tag_id,
                            )
                        )
                    elif kind is EntityKind.BOARD:
                        column_ids = select(ColumnRow.id).where(ColumnRow.board_id == entity_id)
                        doomed = select(CardRow.id).where(col(CardRow.column_id).in_(column_ids))
                        await self._delete_cards(session, doomed)
                        await session.execute(
                            delete(ColumnRow).where(col(ColumnRow.board_id) == entity_id)
                        )
                        await session.execute(delete(BoardRow).where(col(BoardRow.id) == entity_id))
                    elif kind is EntityKind.COLUMN:
                        await self._delete_cards(
                            session, select(CardRow.id).where(CardRow.column_id == entity_id)
                        )
                        await session.execute(
                            delete(ColumnRow).where(col(ColumnRow.id) == entity_id)
                        )
                    elif kind is EntityKind.CARD:
                        await self._delete_cards(session, [entity_id])
                    else:
                        await session.execute(
                            delete(CardTagRow).where(col(CardTagRow.tag_id) == entity_id)
                        )
                        await session.execute(delete(TagRow).where(col(TagRow.id) == entity_id))
                    await session.commit()
        log.debug("Deleted %s %s", kind.label, entity_id)

    async def _attach_tag(self, card_id: str, tag_id: str) -> Card:
        async with _translate_errors("add tag"):
            async with self._lock:
                async with self._get_session() as session:
                    card = await session.get(CardRow, card_id)
                    if card is None:
                        raise NotFoundError(f"Card not found: {card_id}", operation="add tag")
                    if await session.get(TagRow, tag_id) is None:
                        raise NotFoundError(f"Tag not found: {tag_id}", operation="add tag")
                    existing = await session.execute(
                        select(CardTagRow).where(
                            CardTagRow.card_id == card_id, CardTagRow.tag_id == tag_id
                        )
                    )
                    if existing.scalars().first() is None:
                        session.add(CardTagRow(card_id=card_id, tag_id=tag_id))
                        await session.commit()
                    tag_ids = await self._tag_ids(session, [card_id])
        entity = _to_entity(EntityKind.CARD, card, tag_ids.get(card_id, ()))
        assert isinstance(entity, Card)
        return entity

    @staticmethod
    async def _delete_cards(session: AsyncSession, card_ids: Any) -> None:
        await session.execute(delete(CardTagRow).where(col(CardTagRow.card_id).in_(card_ids)))
        await session.execute(delete(CardRow).where(col(CardRow.id).in_(card_ids)))

    @staticmethod
    async def _tag_ids(session: AsyncSession, card_ids: Iterable[str]) -> dict[str, list[str]]:
        ids = list(card_ids)
        if not ids:
            return {}
        result = await session.execute(
            select(CardTagRow.card_id, CardTagRow.tag_id)
            .where(col(CardTagRow.card_id).in_(ids))
            .order_by(col(CardTagRow.id).asc())
        )
        tag_ids: dict[str, list[str]] = {}
        for card_id, tag_id in result.all():
            tag_ids.setdefault(card_id, []).append(tag_id)
        return tag_ids

    @staticmethod
    def _ordering(kind: EntityKind) -> list[Any]:
        if kind is EntityKind.BOARD:
            return [col(BoardRow.created_at).desc()]
        if kind is EntityKind.COLUMN:
            return [col(ColumnRow.position).asc(), col(ColumnRow.created_at).asc()]
        if kind is EntityKind.CARD:
            return [col(CardRow.position).asc(), col(CardRow.created_at).asc()]
        return [func.lower(TagRow.name).asc()]

    async def list(
        self, kind: EntityKind, filters: Mapping[str, Any] | None = None
    ) -> list[Entity]:
        """List rows matching ``filters`` (equality, or membership for sequences)."""
        row_model = _ROWS[kind]
        query = select(row_model)
        for name, value in (filters or {}).items():
            if name not in row_model.model_fields:
                raise GatewayError(
                    f"Unknown {kind.label} filter: {name}", operation=f"list {kind.label}"
                )
            column = col(getattr(row_model, name))
            if isinstance(value, (list, tuple, set, frozenset)):
                query = query.where(column.in_(list(value)))
            else:
                query = query.where(column == value)
        query = query.order_by(*self._ordering(kind))

        async with _translate_errors(f"list {kind.label}"):
            async with self._get_session() as session:
                result = await session.execute(query)
                rows = list(result.scalars().all())
                tag_ids = (
                    await self._tag_ids(session, [row.id for row in rows])
                    if kind is EntityKind.CARD
                    else {}
                )
        return [_to_entity(kind, row, tag_ids.get(row.id, ())) for row in rows]
