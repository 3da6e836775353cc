import pytest
from datetime import timedelta
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from booking_engine import deliveries, ledger
from booking_engine.engine import BookingEngine
from booking_engine.models import Base, utcnow


class FakeCampaignClient:
    """Records every meal counter call; can be told to fail the next N calls."""

    def __init__(self):
        self.calls = []
        self.failures = 0

    async def increment_meal_counter(self, campaign_id, delta, dedupe_key):
        if self.failures:
            self.failures -= 1
            raise ConnectionError("campaign service unreachable")
        self.calls.append((campaign_id, delta, dedupe_key))


@pytest.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'booking.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(bind=db_engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)


@pytest.fixture
def campaign_client():
    return FakeCampaignClient()


@pytest.fixture
def published():
    return []


@pytest.fixture
def booking_engine(session_factory, campaign_client, published):
    async def publisher(exchange_name, routing_key, message_data):
        published.append((routing_key, message_data))

    return BookingEngine(session_factory, campaign_client=campaign_client, publisher=publisher)


@pytest.fixture
def add_food_item(booking_engine):
    async def _add(item_id="food-1", qty_total=5, expires_in=timedelta(days=1), campaign_id="campaign-1"):
        return await booking_engine.sync_food_item(
            item_id,
            qty_total,
            expires_at=utcnow() + expires_in if expires_in is not None else None,
            donor_id="donor-1",
            campaign_id=campaign_id,
            title="Rice boxes",
        )
    return _add


@pytest.fixture
def available(session_factory):
    async def _available(item_id="food-1"):
        async with session_factory() as session:
            return await ledger.available(session, item_id)
    return _available


@pytest.fixture
def delivery_for(session_factory):
    async def _delivery_for(booking_id):
        async with session_factory() as session:
            return await deliveries.get_by_booking(session, booking_id)
    return _delivery_for


@pytest.fixture
def accepted_delivery(booking_engine, add_food_item, delivery_for):
    """Item of 5, booking of 3 accepted, its delivery still pending."""
    async def _accepted_delivery(qty=3, campaign_id="campaign-1"):
        await add_food_item(qty_total=5, campaign_id=campaign_id)
        booking = await booking_engine.create_booking("receiver-1", "food-1", qty)
        await booking_engine.decide_booking(booking.id, "accept")
        return await delivery_for(booking.id)
    return _accepted_delivery
