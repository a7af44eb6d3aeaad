"""Session factory that stops handing out sessions once shutdown begins."""

from __future__ import annotations

from typing import TYPE_CHECKING

from boardsync.errors import GatewayClosing

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


class ClosingAwareSessionFactory:
    """Callable returning new sessions until :meth:`mark_closing`.

    The gateway flips the flag before disposing the engine, so late calls fail
    with :class:`GatewayClosing` rather than reaching a disposed pool.
    """

    __slots__ = ("_accepting", "_label", "_make_session")

    def __init__(
        self, make_session: async_sessionmaker[AsyncSession], label: str = "database"
    ) -> None:
        self._make_session = make_session
        self._label = label
        self._accepting = True

    @property
    def closing(self) -> bool:
        return not self._accepting

    def mark_closing(self) -> None:
        self._accepting = False

    def __call__(self) -> AsyncSession:
        if not self._accepting:
            raise GatewayClosing(f"{self._label} is shutting down")
        return self._make_session()
