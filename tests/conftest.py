"""
Shared fixtures: a manual clock, a notifier that records pushes, and an
in-memory engine wired to both.
"""
from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio

from ridematch.config import Settings
from ridematch.dispatch import build_in_memory_engine
from ridematch.domain import DiscountType, Location, PromoCode
from ridematch.services.clock import ManualClock
from ridematch.services.repository import InMemoryPromoRepository


class RecordingNotifier:
    def __init__(self):
        self.sent: list[tuple[str, str, str, dict]] = []

    async def notify(self, user_id, title, message, payload) -> None:
        self.sent.append((user_id, title, message, payload))

    def titles_for(self, user_id: str) -> list[str]:
        return [title for uid, title, _, _ in self.sent if uid == user_id]

    async def aclose(self) -> None:
        pass


@pytest.fixture
def settings():
    # positions stay fresh across the long clock jumps the search tests make
    return Settings(_env_file=None, driver_location_ttl_seconds=3600)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def pickup():
    return Location(12.9716, 77.5946, "MG Road")


@pytest.fixture
def drop():
    return Location(12.9352, 77.6245, "Koramangala")


@pytest.fixture
def promo_repository(clock):
    now = clock.now()
    return InMemoryPromoRepository([
        PromoCode(
            code="SAVE20",
            discount_type=DiscountType.percentage,
            discount_value=Decimal("20"),
            max_discount=Decimal("50"),
            valid_from=now - timedelta(days=1),
            valid_until=now + timedelta(days=30),
        ),
    ])


@pytest_asyncio.fixture
async def engine(settings, clock, notifier, promo_repository):
    engine = build_in_memory_engine(settings, clock=clock, notifier=notifier, promo_repository=promo_repository)
    yield engine
    await engine.shutdown()
