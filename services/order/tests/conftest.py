"""Shared fixtures: a SQLite-backed store, a controllable clock and mock Redis."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from order_lifecycle import states
from order_lifecycle.commands import WorkflowEngine
from order_lifecycle.decisions import DecisionHandler
from order_lifecycle.identity import Principal
from order_lifecycle.notifications import EventPublisher
from order_lifecycle.request_queue import RequestQueue
from order_lifecycle.store import OrderStore


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
async def store(tmp_path):
    store = OrderStore(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await store.init()
    yield store
    await store.dispose()


@pytest.fixture
def redis():
    redis = AsyncMock()
    redis.publish.return_value = 1
    return redis


@pytest.fixture
def engine(store, redis, clock):
    return WorkflowEngine(store, publisher=EventPublisher(redis), clock=clock)


@pytest.fixture
def queue(engine):
    return RequestQueue(engine)


@pytest.fixture
def decisions(engine):
    return DecisionHandler(engine)


@pytest.fixture
def customer():
    return Principal(user_id=1, role="customer")


@pytest.fixture
def other_customer():
    return Principal(user_id=2, role="customer")


@pytest.fixture
def admin():
    return Principal(user_id=99, role="admin")


SAMPLE_ITEMS = [
    {"product_id": "p-1", "name": "Desk Lamp", "quantity": 2, "price": "250.00"},
    {"product_id": "p-2", "name": "Notebook", "quantity": 1, "price": "99.50"},
]

SAMPLE_ADDRESS = {
    "street": "12 MG Road",
    "city": "Bengaluru",
    "state": "KA",
    "zip_code": "560001",
    "phone": "9999999999",
}


@pytest.fixture
def place_order(engine, customer):
    async def _place(owner=None):
        return await engine.create_order(owner or customer, SAMPLE_ITEMS, "upi", SAMPLE_ADDRESS)

    return _place


@pytest.fixture
def advance_to(engine, admin):
    """Walk an order along the forward flow until it reaches `target`."""

    async def _advance(order_id, target):
        order = await engine.load(order_id)
        while order.status != target:
            nxt = states.next_forward_status(order.status)
            extra = {}
            if nxt == states.SHIPPED:
                extra = {"tracking_number": "TRK1", "courier_name": "BlueDart"}
            order = await engine.request_transition(order_id, admin, nxt, **extra)
        return order

    return _advance
