"""
Order Service — Notification sink

Publishes lifecycle events to Redis Pub/Sub for user-facing messaging and
audit consumers. Fire-and-forget: this runs after the transaction has
committed, and a slow or broken Redis is logged, never raised.
"""

import asyncio
import json
import logging

import redis.asyncio as aioredis

from .events import OrderEvent

logger = logging.getLogger(__name__)


class EventPublisher:
    def __init__(
        self,
        redis: aioredis.Redis | None,
        channel: str = "order_events",
        timeout: float = 2.0,
    ) -> None:
        self.redis = redis
        self.channel = channel
        self.timeout = timeout

    async def publish(self, event: OrderEvent) -> bool:
        """Returns False when the event could not be delivered."""
        if self.redis is None:
            return False
        payload = json.dumps(
            {"event_type": event.event_type, "data": event.model_dump(mode="json")},
            default=str,
        )
        try:
            await asyncio.wait_for(
                self.redis.publish(self.channel, payload), timeout=self.timeout
            )
        except Exception:
            logger.warning(
                "Failed to publish %s for order %s",
                event.event_type,
                event.order_id,
                exc_info=True,
            )
            return False
        return True
