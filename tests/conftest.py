"""Pytest fixtures for boardsync tests."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
from hypothesis import Phase, Verbosity, settings

_TEST_BASE_DIR = Path(tempfile.mkdtemp(prefix="boardsync-tests-"))
os.environ["BOARDSYNC_DATA_DIR"] = str(_TEST_BASE_DIR / "data")
os.environ["BOARDSYNC_CONFIG_DIR"] = str(_TEST_BASE_DIR / "config")

if TYPE_CHECKING:
    from boardsync.adapters.db.gateway import SqlGateway
    from boardsync.bootstrap import InMemoryEventBus
    from boardsync.events import DomainEvent
    from boardsync.services.sync import SyncEngine
    from boardsync.store import EntityStore
    from tests.helpers.gateway import FakeGateway


settings.register_profile(
    "ci",
    max_examples=100,
    deadline=None,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
)
settings.register_profile(
    "dev",
    max_examples=20,
    deadline=500,
)
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "dev"))


@pytest.fixture
def event_bus() -> InMemoryEventBus:
    """Create an in-memory event bus for engine tests."""
    from boardsync.bootstrap import InMemoryEventBus

    return InMemoryEventBus()


@pytest.fixture
def events(event_bus: InMemoryEventBus) -> list[DomainEvent]:
    """Every event published on ``event_bus``, in order."""
    received: list[DomainEvent] = []
    event_bus.add_handler(received.append)
    return received


@pytest.fixture
def store() -> EntityStore:
    from boardsync.store import EntityStore

    return EntityStore()


@pytest.fixture
def gateway() -> FakeGateway:
    from tests.helpers.gateway import FakeGateway

    return FakeGateway()


@pytest.fixture
def engine(store: EntityStore, gateway: FakeGateway, event_bus: InMemoryEventBus) -> SyncEngine:
    """Create a SyncEngine over the fake gateway."""
    from boardsync.services.sync import SyncEngine

    return SyncEngine(store, gateway, event_bus)


@pytest.fixture
async def sql_gateway(tmp_path: Path):
    """Create a temporary SQLite gateway."""
    from boardsync.adapters.db.gateway import SqlGateway

    gateway: SqlGateway = SqlGateway(tmp_path / "test.db")
    await gateway.initialize()
    yield gateway
    await gateway.close()
