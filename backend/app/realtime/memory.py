import logging
from typing import Dict, List

from .base import ChangeEvent, EventHandler, RealtimeChannel, Subscription

logger = logging.getLogger(__name__)


class InMemoryChannel(RealtimeChannel):
    """
    Single-process channel. publish() awaits every current subscriber of the
    topic in subscription order before returning.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[Subscription]] = {}

    async def publish(self, event: ChangeEvent) -> None:
        subscribers = list(self._subscribers.get(event.topic, []))
        logger.debug(f"Publishing {event.event_type.value} on {event.topic} to {len(subscribers)} subscribers")
        for subscription in subscribers:
            await subscription.deliver(event)

    async def subscribe(self, topic: str, handler: EventHandler) -> Subscription:
        subscription = Subscription(self, topic, handler)
        self._subscribers.setdefault(topic, []).append(subscription)
        return subscription

    async def _unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.topic)
        if not subscribers:
            return
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            del self._subscribers[subscription.topic]

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, []))
