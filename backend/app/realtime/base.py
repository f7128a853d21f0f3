import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    """A row-level change, scoped to one table and one room."""
    table: str
    event_type: EventType
    room_id: str
    record: Dict[str, Any] = {}

    @property
    def topic(self) -> str:
        return topic_for(self.table, self.room_id)


def topic_for(table: str, room_id: str) -> str:
    return f"{table}:{room_id}"


EventHandler = Callable[[ChangeEvent], Awaitable[None]]


class ChannelError(Exception):
    """Raised by a channel when the pub/sub backend fails."""


class Subscription:
    """
    Handle returned by RealtimeChannel.subscribe.

    cancel() may be called any number of times; once cancelled the handler is
    never invoked again by this subscription.
    """

    def __init__(self, channel: "RealtimeChannel", topic: str, handler: EventHandler):
        self.channel = channel
        self.topic = topic
        self.handler = handler
        self.active = True

    async def deliver(self, event: ChangeEvent) -> None:
        if not self.active:
            return
        try:
            await self.handler(event)
        except Exception as e:
            logger.exception(f"Subscriber for {self.topic} failed handling {event.event_type.value}: {e}")

    async def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        await self.channel._unsubscribe(self)


class RealtimeChannel(ABC):
    """Publish/subscribe for row-change events, filtered by topic."""

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def ping(self) -> bool:
        return True

    @abstractmethod
    async def publish(self, event: ChangeEvent) -> None: ...

    @abstractmethod
    async def subscribe(self, topic: str, handler: EventHandler) -> Subscription: ...

    @abstractmethod
    async def _unsubscribe(self, subscription: Subscription) -> None: ...

    async def publish_change(
        self,
        table: str,
        event_type: EventType,
        room_id: str,
        record: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Publish a change for a row that is already committed.

        A channel failure is logged and reported as False; it never undoes or
        fails the write that produced the change.
        """
        event = ChangeEvent(
            table=table,
            event_type=event_type,
            room_id=room_id,
            record=record or {},
        )
        try:
            await self.publish(event)
        except (ChannelError, OSError) as e:
            logger.error(f"Failed to publish {event_type.value} on {event.topic}: {e}")
            return False
        return True
