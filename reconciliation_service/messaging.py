import json
import logging
from datetime import datetime
from uuid import uuid4

import aio_pika

logger = logging.getLogger(__name__)

PAYMENT_EXCHANGE = "payment_exchange"
INVENTORY_EXCHANGE = "inventory_exchange"

connection = None
channel = None


async def setup_rabbitmq(rabbitmq_url: str):
    global connection, channel
    try:
        connection = await aio_pika.connect_robust(rabbitmq_url)
        channel = await connection.channel()
        for exchange_name in (PAYMENT_EXCHANGE, INVENTORY_EXCHANGE):
            await channel.declare_exchange(exchange_name, aio_pika.ExchangeType.TOPIC, durable=True)
        logger.info("RabbitMQ setup complete.")
    except Exception as e:
        # the webhook path must keep working without the broker
        logger.error("Error setting up RabbitMQ: %s", e)


async def close_rabbitmq():
    global connection, channel
    if connection is not None:
        await connection.close()
    connection = None
    channel = None


def build_event(event_type: str, **fields) -> dict:
    return {
        "event_id": str(uuid4()),
        "event_type": event_type,
        "timestamp": datetime.utcnow().isoformat(),
        **fields,
    }


async def publish_event(exchange_name: str, routing_key: str, message_data: dict):
    if not channel:
        logger.warning(
            "RabbitMQ channel not available. Cannot publish %s: %s",
            routing_key, message_data,
        )
        return

    message_body = json.dumps(message_data, default=str).encode("utf-8")
    message = aio_pika.Message(
        message_body,
        content_type="application/json",
        delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
    )

    try:
        exchange = await channel.get_exchange(exchange_name)
        await exchange.publish(message, routing_key=routing_key)
        logger.info("Published event to %s: %s", routing_key, message_data["event_type"])
    except Exception as e:
        logger.error("Error publishing event %s: %s", routing_key, e)
