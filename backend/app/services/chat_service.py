import logging
import uuid
from collections import deque
from typing import Awaitable, Callable, Deque, List, Optional, Set
from uuid import UUID

from pydantic import ValidationError

from ..core.clock import utcnow
from ..core.exceptions import ForbiddenError, InternalError, NotFoundError
from ..core.metrics import MESSAGES_SENT
from ..core.session import SessionContext
from ..realtime.base import ChangeEvent, EventType, RealtimeChannel, Subscription, topic_for
from ..schemas.chat import Message, MessageCreate, MessageWithReply, ReplyPreview
from ..store.base import Store, StoreError

logger = logging.getLogger(__name__)

MESSAGES_TABLE = "messages"

# How many recent message ids a subscription remembers for de-duplication
DEDUP_WINDOW = 500

MessageCallback = Callable[[MessageWithReply], Awaitable[None]]


class MessageSubscription:
    """
    Forwards message INSERT events for one room to a callback, resolving the
    reply preview and dropping ids already delivered.
    """

    def __init__(self, service: "ChatService", callback: MessageCallback):
        self.service = service
        self.callback = callback
        self.subscription: Optional[Subscription] = None
        self._seen: Set[UUID] = set()
        self._order: Deque[UUID] = deque()

    async def handle(self, event: ChangeEvent) -> None:
        if event.event_type != EventType.INSERT:
            return
        try:
            message = Message.model_validate(event.record)
        except ValidationError:
            logger.error(f"Dropping malformed message event in room {event.room_id}")
            return
        if message.id in self._seen:
            logger.debug(f"Duplicate delivery of message {message.id} ignored")
            return
        self._remember(message.id)
        await self.callback(await self.service.attach_reply(message))

    def _remember(self, message_id: UUID) -> None:
        self._seen.add(message_id)
        self._order.append(message_id)
        if len(self._order) > DEDUP_WINDOW:
            self._seen.discard(self._order.popleft())

    async def cancel(self) -> None:
        if self.subscription:
            await self.subscription.cancel()

    @property
    def active(self) -> bool:
        return bool(self.subscription and self.subscription.active)


class ChatService:
    def __init__(self, store: Store, channel: RealtimeChannel):
        self.store = store
        self.channel = channel

    async def send_message(self, session: SessionContext, room_id: str, message_in: MessageCreate) -> MessageWithReply:
        """
        Persist a message from the session user and publish it to the room.
        """
        await self.require_participant(session, room_id)

        reply_target = None
        if message_in.reply_to_id:
            reply_target = await self._call(self.store.get_message(message_in.reply_to_id))
            if not reply_target or reply_target.room_id != room_id:
                raise NotFoundError("Message being replied to was not found")

        message = Message(
            id=uuid.uuid4(),
            room_id=room_id,
            user_id=session.user_id,
            username=session.username,
            content=message_in.content,
            image_url=message_in.image_url,
            file_url=message_in.file_url,
            file_type=message_in.file_type,
            reply_to_id=message_in.reply_to_id,
            created_at=utcnow(),
        )
        message = await self._call(self.store.insert_message(message))

        kind = "attachment" if message.image_url or message.file_url else "reply" if reply_target else "text"
        MESSAGES_SENT.labels(kind=kind).inc()
        logger.debug(f"Message {message.id} stored in room {room_id}")

        await self.channel.publish_change(
            MESSAGES_TABLE, EventType.INSERT, room_id, message.model_dump(mode="json")
        )
        return self._with_reply(message, reply_target)

    async def require_participant(self, session: SessionContext, room_id: str) -> None:
        participant = await self._call(self.store.get_participant(room_id, session.user_id))
        if not participant:
            raise ForbiddenError("User is not a participant in this room")

    async def get_room_messages(self, room_id: str) -> List[MessageWithReply]:
        """
        All messages for a room, oldest first, each reply carrying a preview
        of the message it answers when that message still exists.
        """
        messages = await self._call(self.store.list_messages(room_id))
        reply_ids = list({m.reply_to_id for m in messages if m.reply_to_id})
        targets = await self._call(self.store.get_messages_by_id(reply_ids)) if reply_ids else {}
        return [self._with_reply(m, targets.get(m.reply_to_id)) for m in messages]

    async def subscribe(self, room_id: str, callback: MessageCallback) -> MessageSubscription:
        subscription = MessageSubscription(self, callback)
        subscription.subscription = await self.channel.subscribe(
            topic_for(MESSAGES_TABLE, room_id), subscription.handle
        )
        return subscription

    async def attach_reply(self, message: Message) -> MessageWithReply:
        target = None
        if message.reply_to_id:
            target = await self._call(self.store.get_message(message.reply_to_id))
        return self._with_reply(message, target)

    def _with_reply(self, message: Message, target: Optional[Message]) -> MessageWithReply:
        preview = None
        if target:
            preview = ReplyPreview(
                id=target.id,
                username=target.username,
                content=target.content,
                created_at=target.created_at,
            )
        return MessageWithReply(**message.model_dump(), reply_to_message=preview)

    async def _call(self, awaitable):
        try:
            return await awaitable
        except StoreError as e:
            logger.error(f"Store failure in chat service: {e}")
            raise InternalError()
