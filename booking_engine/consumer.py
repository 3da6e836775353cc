"""
Food catalog consumer.

The catalog owns food items; this process mirrors ``food.upserted`` events
into the ledger so reservations can be checked against ``qty_total`` and expiry.
"""
import asyncio
import json
import logging
import aio_pika
from datetime import datetime, timezone
from booking_engine import ledger
from booking_engine.config import RABBITMQ_URL, setup_logging
from booking_engine.database import get_session, init_db
from booking_engine.errors import EngineError
from booking_engine.messaging import CATALOG_EXCHANGE

logger = logging.getLogger(__name__)


def _parse_datetime(value):
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


async def process_food_upserted(message: aio_pika.IncomingMessage):
    async with message.process():
        try:
            event_data = json.loads(message.body.decode())
            item_id = event_data["food_item_id"]
            logger.info(f"Booking Service received FoodUpserted for item {item_id}")

            async for session in get_session():
                await ledger.sync_item(
                    session,
                    item_id,
                    int(event_data["qty_total"]),
                    expires_at=_parse_datetime(event_data.get("expires_at")),
                    donor_id=event_data.get("donor_id"),
                    campaign_id=event_data.get("campaign_id"),
                    title=event_data.get("title"),
                )
                await session.commit()

        except (KeyError, ValueError, json.JSONDecodeError) as e:
            logger.error(f"Malformed FoodUpserted event dropped: {e}")
        except EngineError as e:
            logger.warning(f"FoodUpserted rejected by ledger: {e.message}")
        except Exception:
            logger.exception("Error processing FoodUpserted in Booking Service")
            raise


async def main():
    setup_logging()
    await init_db()
    connection = await aio_pika.connect_robust(RABBITMQ_URL)
    async with connection:
        channel = await connection.channel()

        catalog_exchange = await channel.declare_exchange(CATALOG_EXCHANGE, aio_pika.ExchangeType.TOPIC, durable=True)

        queue = await channel.declare_queue("booking_catalog_q", durable=True)
        await queue.bind(catalog_exchange, "food.upserted")

        logger.info("Booking Service catalog consumer is listening for events...")

        async def on_message(message: aio_pika.IncomingMessage):
            if message.routing_key == "food.upserted":
                await process_food_upserted(message)
            else:
                async with message.process():
                    logger.info(f"Ignored event with routing key: {message.routing_key}")

        await queue.consume(on_message, no_ack=False)

        # Keep the main task running
        await asyncio.Future()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Catalog consumer stopped.")
