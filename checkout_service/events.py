"""
Checkout Service — event definitions

Facts emitted by the checkout. Named in the past tense and never mutated.
They are published on Redis Pub/Sub for other services (reporting,
notifications) to project; nothing in the checkout reads them back.

Pub/Sub is fire-and-forget: a publish failure is logged and the checkout
result stands.
"""

import json
import logging
from datetime import datetime

import redis.asyncio as aioredis
from pydantic import BaseModel

logger = logging.getLogger(__name__)

CHECKOUT_CHANNEL = "checkout_events"
INVENTORY_CHANNEL = "inventory_events"


class StockReserved(BaseModel):
    """Stock was decremented for one order line"""
    content_id: str
    order_id: str
    quantity: int
    timestamp: datetime


class StockReleased(BaseModel):
    """A reservation was returned to stock (compensation)"""
    content_id: str
    order_id: str
    quantity: int
    timestamp: datetime


class CheckoutCommitted(BaseModel):
    order_id: str
    order_number: str
    user_id: str
    total_price: str
    saga_log: list[dict]
    timestamp: datetime


class CheckoutCompensated(BaseModel):
    """The checkout failed and every committed effect was unwound"""
    user_id: str
    order_id: str | None
    error_category: str
    rollback_complete: bool
    saga_log: list[dict]
    timestamp: datetime


class EventPublisher:
    """Publishes events on Redis channels. A missing client disables publishing."""

    def __init__(self, redis: aioredis.Redis | None) -> None:
        self.redis = redis

    async def publish(self, channel: str, event: BaseModel) -> None:
        if self.redis is None:
            return
        try:
            payload = json.dumps(
                {
                    "event_type": type(event).__name__,
                    "data": event.model_dump(mode="json"),
                },
                default=str,
            )
            await self.redis.publish(channel, payload)
        except Exception:
            logger.exception("Failed to publish %s on %s", type(event).__name__, channel)
