"""Position allocation for columns within a board and cards within a column.

Policy:

* a new entity is appended at ``max(position) + 1`` (0 in an empty scope);
* any move renumbers every affected scope to ``0..N-1`` in display order, so
  a move never leaves duplicate positions behind;
* deletion leaves gaps, which the next move in that scope closes.

All functions are pure. Plans are ``{entity_id: position}`` mappings in
display order.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence


class Positioned(Protocol):
    @property
    def id(self) -> str: ...

    @property
    def position(self) -> int: ...


def ordered[T: Positioned](siblings: Iterable[T]) -> list[T]:
    """Siblings in display order; equal positions keep insertion order."""
    return sorted(siblings, key=lambda item: item.position)


def next_position(siblings: Iterable[Positioned]) -> int:
    positions = [item.position for item in siblings]
    return max(positions) + 1 if positions else 0


def index_of(siblings: Sequence[Positioned], entity_id: str) -> int:
    for index, item in enumerate(siblings):
        if item.id == entity_id:
            return index
    raise ValueError(f"{entity_id!r} is not in this scope")


def _clamp(index: int, upper: int) -> int:
    return max(0, min(index, upper))


def renumber(ids: Iterable[str]) -> dict[str, int]:
    return {entity_id: position for position, entity_id in enumerate(ids)}


def reorder(siblings: Iterable[Positioned], entity_id: str, to_index: int) -> dict[str, int]:
    """Plan for moving ``entity_id`` to ``to_index`` within its own scope."""
    ids = [item.id for item in ordered(siblings)]
    from_index = ids.index(entity_id) if entity_id in ids else -1
    if from_index < 0:
        raise ValueError(f"{entity_id!r} is not in this scope")
    ids.pop(from_index)
    ids.insert(_clamp(to_index, len(ids)), entity_id)
    return renumber(ids)


def move_across(
    source: Iterable[Positioned],
    destination: Iterable[Positioned],
    entity_id: str,
    to_index: int | None = None,
) -> tuple[dict[str, int], dict[str, int]]:
    """Plans for moving ``entity_id`` out of ``source`` into ``destination``.

    ``to_index`` is the display index in the destination; ``None`` appends.
    Returns ``(source_plan, destination_plan)``; the moved entity appears only
    in the destination plan.
    """
    source_ids = [item.id for item in ordered(source)]
    if entity_id not in source_ids:
        raise ValueError(f"{entity_id!r} is not in the source scope")
    source_ids.remove(entity_id)
    destination_ids = [item.id for item in ordered(destination) if item.id != entity_id]
    if to_index is None:
        to_index = len(destination_ids)
    destination_ids.insert(_clamp(to_index, len(destination_ids)), entity_id)
    return renumber(source_ids), renumber(destination_ids)


def changed_positions(
    siblings: Iterable[Positioned], plan: Mapping[str, int]
) -> dict[str, int]:
    """Entries of ``plan`` whose position differs from the current one."""
    current = {item.id: item.position for item in siblings}
    return {
        entity_id: position
        for entity_id, position in plan.items()
        if current.get(entity_id) != position
    }
