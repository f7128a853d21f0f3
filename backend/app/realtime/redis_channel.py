import asyncio
import logging
from typing import Dict, List, Optional

import redis.asyncio as redis
from pydantic import ValidationError
from redis.exceptions import RedisError

from .base import ChangeEvent, ChannelError, EventHandler, RealtimeChannel, Subscription

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "realtime:"


class RedisChannel(RealtimeChannel):
    """
    Realtime channel relayed through Redis Pub/Sub so every backend instance
    sees every change.

    One pub/sub connection per instance; a background listener task fans
    incoming events out to the local subscribers of each topic.
    """

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self.redis_client: Optional[redis.Redis] = None
        self.pubsub = None
        self.listener_task: Optional[asyncio.Task] = None
        self._subscribers: Dict[str, List[Subscription]] = {}

    async def connect(self) -> None:
        """Establishes connection to Redis."""
        self.redis_client = redis.Redis.from_url(
            self.redis_url,
            encoding="utf-8",
            decode_responses=True
        )
        await self.redis_client.ping()
        self.pubsub = self.redis_client.pubsub(ignore_subscribe_messages=True)
        logger.info("Successfully connected to Redis.")

    async def close(self) -> None:
        """Stops the listener and closes the Redis connection."""
        if self.listener_task and not self.listener_task.done():
            self.listener_task.cancel()
            try:
                await self.listener_task
            except asyncio.CancelledError:
                logger.info("Redis Pub/Sub listener task cancelled.")
        if self.pubsub is not None:
            await self.pubsub.aclose()
        if self.redis_client:
            await self.redis_client.aclose()
            logger.info("Redis connection closed.")

    async def ping(self) -> bool:
        if not self.redis_client:
            return False
        try:
            return bool(await self.redis_client.ping())
        except RedisError as e:
            logger.error(f"Redis ping failed: {e}")
            return False

    def _require_connection(self) -> redis.Redis:
        if not self.redis_client:
            logger.error("Redis not connected.")
            raise ConnectionError("Redis connection not available")
        return self.redis_client

    async def publish(self, event: ChangeEvent) -> None:
        client = self._require_connection()
        try:
            await client.publish(CHANNEL_PREFIX + event.topic, event.model_dump_json())
        except RedisError as e:
            raise ChannelError(f"Redis publish failed: {e}") from e

    async def subscribe(self, topic: str, handler: EventHandler) -> Subscription:
        self._require_connection()
        subscription = Subscription(self, topic, handler)
        subscribers = self._subscribers.setdefault(topic, [])
        subscribers.append(subscription)
        if len(subscribers) == 1:
            await self.pubsub.subscribe(CHANNEL_PREFIX + topic)
            logger.info(f"Subscribed to Redis channel: {CHANNEL_PREFIX + topic}")

        # Start the pub/sub listener if it's not running
        if self.listener_task is None or self.listener_task.done():
            self.listener_task = asyncio.create_task(self._listener())
            logger.info("Started Redis Pub/Sub listener task.")
        return subscription

    async def _unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.topic)
        if not subscribers or subscription not in subscribers:
            return
        subscribers.remove(subscription)
        if not subscribers:
            del self._subscribers[subscription.topic]
            try:
                await self.pubsub.unsubscribe(CHANNEL_PREFIX + subscription.topic)
                logger.info(f"Unsubscribed from Redis channel: {CHANNEL_PREFIX + subscription.topic}")
            except RedisError as e:
                logger.exception(f"Error unsubscribing from {subscription.topic}: {e}")

    async def _listener(self) -> None:
        """Reads the pub/sub connection and relays events to local subscribers."""
        try:
            while True:
                message = await self.pubsub.get_message(timeout=1.0)
                if message is not None:
                    await self._dispatch(message)
                # Yield so cancellation is noticed promptly
                await asyncio.sleep(0.01)
        except asyncio.CancelledError:
            logger.info("Pub/Sub listener task is stopping.")
            raise
        except Exception as e:
            logger.exception(f"Redis Pub/Sub listener error: {e}")

    async def _dispatch(self, message: dict) -> None:
        try:
            event = ChangeEvent.model_validate_json(message["data"])
        except ValidationError:
            logger.error(f"Dropping malformed realtime payload on {message.get('channel')}")
            return
        for subscription in list(self._subscribers.get(event.topic, [])):
            await subscription.deliver(event)
