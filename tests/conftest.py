"""
Shared pytest fixtures.

The services run against a real SQL path (file-backed SQLite through
aiosqlite, so concurrent sessions get separate connections) and a
recording stand-in for the Redis client that can be switched to fail.
"""

import asyncio
import json

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError

from services.inventory.app.commands import InventoryUpdateCoordinator
from services.inventory.app.ledger import InventoryLedger
from services.order.app.commands import OrderWorkflow
from services.order.app.store import OrderStore
from services.saga.app.orchestrator import OrderSagaOrchestrator
from services.saga.app.state import SagaStore
from services.shared.database import create_engine_and_sessions, create_schema
from services.shared.event_bus import EventPublisher

BUS = "test-bus"


class RecordingRedis:
    """Captures published messages; can simulate an unreachable bus."""

    def __init__(self):
        self.published: list[tuple[str, dict]] = []
        self.unreachable = False
        self.fail_on: set[str] = set()

    async def publish(self, channel: str, message: str) -> int:
        await asyncio.sleep(0)
        payload = json.loads(message)
        if self.unreachable or payload["event_type"] in self.fail_on:
            raise RedisConnectionError("Error 111 connecting to localhost:6379")
        self.published.append((channel, payload))
        return 1

    def event_types(self) -> list[str]:
        return [payload["event_type"] for _, payload in self.published]

    def events(self, event_type: str) -> list[dict]:
        return [
            payload["data"]
            for _, payload in self.published
            if payload["event_type"] == event_type
        ]


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine, async_session = create_engine_and_sessions(
        f"sqlite+aiosqlite:///{tmp_path / 'services.db'}"
    )
    await create_schema(engine)
    yield async_session
    await engine.dispose()


@pytest.fixture
def redis():
    return RecordingRedis()


@pytest_asyncio.fixture
async def publisher(redis):
    publisher = EventPublisher(redis, BUS)
    yield publisher
    await publisher.drain()


@pytest.fixture
def ledger(session_factory):
    return InventoryLedger(session_factory)


@pytest.fixture
def coordinator(ledger, publisher):
    return InventoryUpdateCoordinator(ledger, publisher)


@pytest.fixture
def saga_store(session_factory):
    return SagaStore(session_factory)


@pytest.fixture
def orchestrator(publisher, saga_store):
    return OrderSagaOrchestrator(publisher, saga_store)


@pytest.fixture
def order_store(session_factory):
    return OrderStore(session_factory)


@pytest.fixture
def workflow(order_store, ledger, publisher, orchestrator):
    return OrderWorkflow(order_store, ledger, publisher, orchestrator)


@pytest_asyncio.fixture
async def stocked(ledger):
    await ledger.create_item("sku-1", 5)
    await ledger.create_item("sku-2", 20)
    return ledger
