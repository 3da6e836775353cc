"""Client side of the campaign service's meal counter."""
import logging
from booking_engine import messaging

logger = logging.getLogger(__name__)


class MessagingCampaignClient:
    """
    Sends ``increment_meal_counter`` as a MealCounterIncrement event. The
    campaign service applies each ``dedupe_key`` at most once.
    """

    routing_key = "campaign.meals.increment"

    def __init__(self, publish=None):
        self._publish = publish or messaging.publish_event

    async def increment_meal_counter(self, campaign_id: str, delta: int, dedupe_key: str):
        event = messaging.build_event(
            "MealCounterIncrement",
            campaign_id=campaign_id,
            delta=delta,
            dedupe_key=dedupe_key,
        )
        await self._publish(messaging.CAMPAIGN_EXCHANGE, self.routing_key, event)
