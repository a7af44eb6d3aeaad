"""Per-entity ordering of remote calls."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable
    from types import TracebackType


class SerialLanes:
    """Chains operations that share an entity id in reservation order.

    ``reserve`` is synchronous: callers reserve before their first ``await``,
    so reservation order is the order in which operations were issued.
    Operations with disjoint keys never wait on each other.
    """

    def __init__(self) -> None:
        self._tails: dict[str, asyncio.Future[None]] = {}
        self._aliased: dict[asyncio.Future[None], list[str]] = {}

    def reserve(self, keys: Iterable[str]) -> Lane:
        unique = tuple(dict.fromkeys(key for key in keys if key))
        waits: list[asyncio.Future[None]] = []
        for key in unique:
            tail = self._tails.get(key)
            if tail is not None and not any(tail is w for w in waits):
                waits.append(tail)
        done: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        for key in unique:
            self._tails[key] = done
        return Lane(self, unique, waits, done)

    def alias(self, old_key: str, new_key: str) -> None:
        """Make work queued under ``old_key`` also block ``new_key``."""
        tail = self._tails.get(old_key)
        if tail is not None and not tail.done() and new_key not in self._tails:
            self._tails[new_key] = tail
            self._aliased.setdefault(tail, []).append(new_key)

    def busy(self, key: str) -> bool:
        """Whether work is queued or running under ``key``."""
        tail = self._tails.get(key)
        return tail is not None and not tail.done()

    def pending(self) -> int:
        """Number of keys with unfinished work."""
        return sum(1 for tail in self._tails.values() if not tail.done())

    def _release(self, keys: tuple[str, ...], done: asyncio.Future[None]) -> None:
        if not done.done():
            done.set_result(None)
        for key in (*keys, *self._aliased.pop(done, ())):
            if self._tails.get(key) is done:
                del self._tails[key]


class Lane:
    """Async context manager returned by :meth:`SerialLanes.reserve`."""

    def __init__(
        self,
        lanes: SerialLanes,
        keys: tuple[str, ...],
        waits: list[asyncio.Future[None]],
        done: asyncio.Future[None],
    ) -> None:
        self._lanes = lanes
        self._keys = keys
        self._waits = waits
        self._done = done

    @property
    def keys(self) -> tuple[str, ...]:
        return self._keys

    async def __aenter__(self) -> Lane:
        try:
            if self._waits:
                await asyncio.wait(self._waits)
        except BaseException:
            self._lanes._release(self._keys, self._done)
            raise
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self._lanes._release(self._keys, self._done)
