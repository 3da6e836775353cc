import json
import logging
import aio_pika
from datetime import datetime, timezone
from uuid import uuid4
from booking_engine.config import RABBITMQ_URL

logger = logging.getLogger(__name__)

BOOKING_EXCHANGE = "booking_exchange"
CAMPAIGN_EXCHANGE = "campaign_exchange"
CATALOG_EXCHANGE = "catalog_exchange"

connection = None
channel = None


class MessagingUnavailable(RuntimeError):
    pass


def build_event(event_type: str, **payload) -> dict:
    return {
        "event_id": str(uuid4()),
        "event_type": event_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **payload,
    }


async def setup_rabbitmq():
    global connection, channel
    try:
        connection = await aio_pika.connect_robust(RABBITMQ_URL)
        channel = await connection.channel()
        for name in (BOOKING_EXCHANGE, CAMPAIGN_EXCHANGE):
            await channel.declare_exchange(name, aio_pika.ExchangeType.TOPIC, durable=True)
        logger.info("RabbitMQ setup complete.")
    except Exception as e:
        logger.error(f"Error setting up RabbitMQ: {e}. Events will not be published.")


async def close_rabbitmq():
    global connection, channel
    if connection is not None:
        await connection.close()
    connection = None
    channel = None


async def publish_event(exchange_name: str, routing_key: str, message_data: dict):
    if not channel:
        raise MessagingUnavailable(f"RabbitMQ channel not available, cannot publish {routing_key}")

    message = aio_pika.Message(
        json.dumps(message_data, default=str).encode('utf-8'),
        content_type='application/json',
        delivery_mode=aio_pika.DeliveryMode.PERSISTENT
    )
    exchange = await channel.get_exchange(exchange_name)
    await exchange.publish(message, routing_key=routing_key)
    logger.info(f"Published event to {routing_key}: {message_data['event_type']}")
