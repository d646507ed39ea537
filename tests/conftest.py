"""Shared fixtures for trade engine tests."""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from config import DEFAULTS, validate_settings
from core.models import User, Item
from database import MemoryRepository
from engine import TradeEngine
from notifications import MemoryNotificationSink
from flows import ALICE, BOB, CAROL

# Test data
START = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock shared by every engine component."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sink():
    return MemoryNotificationSink()


@pytest.fixture
def settings():
    return validate_settings(dict(DEFAULTS))


@pytest_asyncio.fixture
async def engine(clock, sink, settings):
    """Create an engine on an in-memory repository with three funded users."""
    engine = TradeEngine(MemoryRepository(), settings, sink, clock)
    for user_id in (ALICE, BOB, CAROL):
        await engine.ledger.register_user(User(id=user_id, name=user_id.title(), cash_balance=10000))
    yield engine
    await engine.close()


@pytest_asyncio.fixture
async def items(engine):
    """Register a few items for Alice and Bob.

    Returns:
        Mapping of item id to item
    """
    catalog = [
        Item(id="alice-watch", owner_id=ALICE, name="Watch", estimated_market_value=7500),
        Item(id="alice-camera", owner_id=ALICE, name="Camera", estimated_market_value=50000),
        Item(id="bob-guitar", owner_id=BOB, name="Guitar", estimated_market_value=12000),
        Item(id="bob-lens", owner_id=BOB, name="Lens", estimated_market_value=20000),
        Item(id="carol-bike", owner_id=CAROL, name="Bike", estimated_market_value=9000),
    ]
    for item in catalog:
        await engine.ledger.register_item(item)
    return {item.id: item for item in catalog}
