"""Remote gateway contract.

The sync engine persists every mutation through a :class:`RemoteGateway`.
Implementations raise :class:`~boardsync.errors.GatewayError` on failure and
own any retry policy; the engine never retries.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from collections.abc import Mapping

    from boardsync.models.entities import Entity
    from boardsync.models.enums import EntityKind


class RemoteGateway(Protocol):
    """CRUD-shaped, id-keyed access to the authoritative store.

    ``EntityKind.CARD_TAG`` addresses card/tag associations: ``create`` takes
    ``{"card_id", "tag_id"}`` and returns the updated card; ``delete`` takes
    :func:`~boardsync.models.entities.card_tag_key`.
    """

    async def create(self, kind: EntityKind, fields: Mapping[str, Any]) -> Entity:
        """Create an entity and return the authoritative version."""
        ...

    async def update(
        self, kind: EntityKind, entity_id: str, fields: Mapping[str, Any]
    ) -> Entity | None:
        """Apply a partial update; returns the authoritative entity when available."""
        ...

    async def delete(self, kind: EntityKind, entity_id: str) -> None:
        """Delete an entity (and its dependents)."""
        ...

    async def list(
        self, kind: EntityKind, filters: Mapping[str, Any] | None = None
    ) -> list[Entity]:
        """List entities; columns and cards come ordered by position."""
        ...

    async def close(self) -> None:
        """Release resources."""
        ...
