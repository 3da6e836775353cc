import asyncio
import logging
from datetime import timedelta
from booking_engine import ledger
from booking_engine.config import setup_logging
from booking_engine.database import get_session, init_db
from booking_engine.models import FoodItem, utcnow

logger = logging.getLogger(__name__)


async def seed_food_items():
    await init_db()
    async for session in get_session():
        # Check if food items are already seeded
        if await session.get(FoodItem, "food-rice-01"):
            logger.info("Food items already seeded.")
            return

        now = utcnow()
        await ledger.sync_item(session, "food-rice-01", 10, expires_at=now + timedelta(days=2),
                               donor_id="donor-1", campaign_id="campaign-1", title="Rice boxes")
        await ledger.sync_item(session, "food-bread-02", 5, expires_at=now + timedelta(hours=12),
                               donor_id="donor-2", campaign_id="campaign-1", title="Bread loaves")
        # For testing InsufficientInventory
        await ledger.sync_item(session, "food-soup-03", 0, expires_at=now + timedelta(days=1),
                               donor_id="donor-2", title="Soup")
        await session.commit()
        logger.info("Food items seeded successfully.")


if __name__ == "__main__":
    setup_logging()
    asyncio.run(seed_food_items())
