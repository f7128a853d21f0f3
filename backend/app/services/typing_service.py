import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional
from uuid import UUID

from ..core.clock import utcnow
from ..core.config import Settings, settings as default_settings
from ..core.exceptions import ForbiddenError, InternalError
from ..core.session import SessionContext
from ..realtime.base import ChangeEvent, EventType, RealtimeChannel, Subscription, topic_for
from ..schemas.presence import TypingStatus
from ..store.base import Store, StoreError

logger = logging.getLogger(__name__)

TYPING_TABLE = "user_typing"

TypingCallback = Callable[[List[str]], Awaitable[None]]


class TypingService:
    def __init__(
        self,
        store: Store,
        channel: RealtimeChannel,
        settings: Settings = default_settings,
        now: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.channel = channel
        self.settings = settings
        self.now = now

    async def set_typing(self, session: SessionContext, room_id: str, is_typing: bool) -> TypingStatus:
        participant = await self._call(self.store.get_participant(room_id, session.user_id))
        if not participant:
            raise ForbiddenError("User is not a participant in this room")

        status = TypingStatus(
            room_id=room_id,
            user_id=session.user_id,
            username=session.username,
            is_typing=is_typing,
            updated_at=self.now(),
        )
        status = await self._call(self.store.upsert_typing(status))
        await self.channel.publish_change(
            TYPING_TABLE, EventType.UPDATE, room_id, status.model_dump(mode="json")
        )
        return status

    async def get_typing_users(self, room_id: str, exclude_user_id: Optional[UUID] = None) -> List[str]:
        """
        Usernames currently typing in a room. Rows older than the staleness
        window are ignored whether or not they have been purged yet.
        """
        since = self.now() - timedelta(seconds=self.settings.TYPING_STALE_SECONDS)
        rows = await self._call(self.store.list_typing(room_id, since))
        return [
            row.username
            for row in rows
            if row.is_typing and row.updated_at >= since and row.user_id != exclude_user_id
        ]

    async def subscribe(
        self, room_id: str, exclude_user_id: Optional[UUID], callback: TypingCallback
    ) -> Subscription:
        """Send the current list, then a recomputed list on every change."""
        async def on_change(event: ChangeEvent) -> None:
            await callback(await self.get_typing_users(room_id, exclude_user_id))

        subscription = await self.channel.subscribe(topic_for(TYPING_TABLE, room_id), on_change)
        await callback(await self.get_typing_users(room_id, exclude_user_id))
        return subscription

    async def clear_typing(self, room_id: str, user_id: UUID) -> None:
        if await self._call(self.store.delete_typing(room_id, user_id)):
            await self.channel.publish_change(
                TYPING_TABLE, EventType.DELETE, room_id,
                {"room_id": room_id, "user_id": str(user_id)},
            )

    async def purge_stale(self) -> int:
        cutoff = self.now() - timedelta(seconds=self.settings.TYPING_PURGE_SECONDS)
        try:
            removed = await self.store.delete_typing_before(cutoff)
        except StoreError as e:
            logger.error(f"Typing purge failed: {e}")
            return 0
        if removed:
            logger.info(f"Purged {removed} stale typing rows")
        return removed

    async def _call(self, awaitable):
        try:
            return await awaitable
        except StoreError as e:
            logger.error(f"Store failure in typing service: {e}")
            raise InternalError()
