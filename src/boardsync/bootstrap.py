"""Application bootstrap and dependency wiring.

:class:`AppContext` holds the configuration, event bus, entity store,
gateway, sync engine and drag resolver. It is created once and passed
explicitly to whatever drives the board (CLI commands, a UI, tests).

Usage:
    async with bootstrap_app() as ctx:
        await ctx.engine.create_board("Sprint 1")
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from boardsync.config import BoardSyncConfig
from boardsync.drag import DragSessionResolver
from boardsync.events import OperationFailed
from boardsync.limits import EVENT_QUEUE_SIZE
from boardsync.paths import get_config_path, get_database_path
from boardsync.services.sync import SyncEngine
from boardsync.store import EntityStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from boardsync.events import DomainEvent, EventBus, EventHandler
    from boardsync.gateway import RemoteGateway

log = logging.getLogger(__name__)


@dataclass(slots=True)
class _Subscriber:
    event_type: type[DomainEvent] | None
    handler: EventHandler | None = None
    queue: asyncio.Queue[DomainEvent] | None = None

    def wants(self, event: DomainEvent) -> bool:
        return self.event_type is None or isinstance(event, self.event_type)


class InMemoryEventBus:
    """In-process bus: sync handlers run inline, async subscribers get a queue.

    Nothing is persisted or replayed. A subscriber whose queue is full misses
    events until it catches up.
    """

    def __init__(self) -> None:
        self._subscribers: list[_Subscriber] = []

    async def publish(self, event: DomainEvent) -> None:
        for subscriber in list(self._subscribers):
            if not subscriber.wants(event):
                continue
            if subscriber.handler is not None:
                try:
                    subscriber.handler(event)
                except Exception:  # quality-allow-broad-except
                    log.exception(
                        "Handler %r failed on %s", subscriber.handler, type(event).__name__
                    )
            elif subscriber.queue is not None:
                try:
                    subscriber.queue.put_nowait(event)
                except asyncio.QueueFull:
                    log.debug("Subscriber queue full; dropped %s", type(event).__name__)

    def add_handler(
        self,
        handler: EventHandler,
        event_type: type[DomainEvent] | None = None,
    ) -> None:
        self._subscribers.append(_Subscriber(event_type, handler=handler))

    def remove_handler(self, handler: EventHandler) -> None:
        self._subscribers = [s for s in self._subscribers if s.handler != handler]

    async def subscribe(
        self, event_type: type[DomainEvent] | None = None
    ) -> AsyncIterator[DomainEvent]:
        """Yield matching events published after the first iteration."""
        subscriber = _Subscriber(event_type, queue=asyncio.Queue(maxsize=EVENT_QUEUE_SIZE))
        self._subscribers.append(subscriber)
        try:
            while True:
                assert subscriber.queue is not None
                yield await subscriber.queue.get()
        finally:
            self._subscribers.remove(subscriber)


@dataclass
class AppContext:
    """Central container for application dependencies.

    Attributes:
        config: Application configuration.
        config_path: Where the configuration was loaded from.
        db_path: SQLite database backing the default gateway.
        event_bus: Domain event bus for notices and UI updates.
        store: Observable entity store.
        gateway: Remote gateway used by the engine.
        engine: Synchronization engine (all inbound mutations).
        drag: Drag-session resolver bound to the engine.
    """

    config: BoardSyncConfig
    config_path: Path
    db_path: Path
    gateway: RemoteGateway

    event_bus: EventBus = field(default_factory=InMemoryEventBus)
    store: EntityStore = field(default_factory=EntityStore)

    engine: SyncEngine = field(init=False)
    drag: DragSessionResolver = field(init=False)

    def __post_init__(self) -> None:
        self.engine = SyncEngine(
            self.store,
            self.gateway,
            self.event_bus,
            notify_success=self.config.sync.notify_success,
        )
        self.drag = DragSessionResolver(self.engine)

    async def close(self) -> None:
        """Tear down the engine first so late completions are ignored."""
        self.engine.close()
        await self.gateway.close()


def _log_failure(event: DomainEvent) -> None:
    if isinstance(event, OperationFailed):
        log.warning("%s: %s", event.message, event.error)


def resolve_db_path(config: BoardSyncConfig, db_path: Path | None = None) -> Path:
    """Explicit path, then the configured override, then the data directory."""
    if db_path is not None:
        return db_path
    if config.general.database_path:
        return Path(config.general.database_path).expanduser()
    return get_database_path()


async def create_app_context(
    config_path: Path | None = None,
    db_path: Path | None = None,
    *,
    config: BoardSyncConfig | None = None,
    gateway: RemoteGateway | None = None,
) -> AppContext:
    """Create an AppContext with an initialized gateway (non-context-manager)."""
    config_path = config_path or get_config_path()
    if config is None:
        config = BoardSyncConfig.load(config_path)
    resolved_db = resolve_db_path(config, db_path)

    if gateway is None:
        from boardsync.adapters.db.gateway import SqlGateway

        sql_gateway = SqlGateway(resolved_db)
        await sql_gateway.initialize()
        gateway = sql_gateway

    ctx = AppContext(
        config=config,
        config_path=config_path,
        db_path=resolved_db,
        gateway=gateway,
    )
    ctx.event_bus.add_handler(_log_failure, OperationFailed)
    return ctx


@asynccontextmanager
async def bootstrap_app(
    config_path: Path | None = None,
    db_path: Path | None = None,
    *,
    config: BoardSyncConfig | None = None,
    gateway: RemoteGateway | None = None,
    load: bool = True,
) -> AsyncIterator[AppContext]:
    """Bootstrap the application context, load boards and tags, and tear down.

    Args:
        config_path: Path to config.toml (defaults to the config directory).
        db_path: SQLite database path (overrides the configured one).
        config: Optional pre-loaded config (for testing).
        gateway: Optional gateway replacing the SQLite default.
        load: Run the initial ``engine.load()`` before yielding.
    """
    ctx = await create_app_context(config_path, db_path, config=config, gateway=gateway)
    try:
        if load:
            await ctx.engine.load()
        yield ctx
    finally:
        await ctx.close()
