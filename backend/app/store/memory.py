import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from ..schemas.chat import Message
from ..schemas.presence import TypingStatus
from ..schemas.room import Room, RoomParticipant
from ..schemas.user import User
from .base import DuplicateKeyError, LastAdminError, Store

logger = logging.getLogger(__name__)


class MemoryStore(Store):
    """
    In-process store for local development and tests.

    State lives in dicts keyed the same way as the SQL tables. A single lock
    serializes writes so multi-step operations (room + admin, capacity-checked
    joins, cascading deletes) stay atomic across coroutines.
    """

    def __init__(self):
        self._lock = asyncio.Lock()
        self.users: Dict[UUID, User] = {}
        self.rooms: Dict[str, Room] = {}
        self.participants: Dict[Tuple[str, UUID], RoomParticipant] = {}
        self.messages: Dict[UUID, Message] = {}
        self.typing: Dict[Tuple[str, UUID], TypingStatus] = {}

    async def ping(self) -> bool:
        return True

    # Users

    async def create_user(self, user: User) -> User:
        async with self._lock:
            if user.id in self.users or any(
                u.username == user.username for u in self.users.values()
            ):
                raise DuplicateKeyError(f"username {user.username} already exists")
            self.users[user.id] = user.model_copy()
            return user.model_copy()

    async def get_user(self, user_id: UUID) -> Optional[User]:
        user = self.users.get(user_id)
        return user.model_copy() if user else None

    async def get_user_by_username(self, username: str) -> Optional[User]:
        for user in self.users.values():
            if user.username == username:
                return user.model_copy()
        return None

    async def update_user(self, user_id: UUID, fields: Dict[str, Any]) -> Optional[User]:
        async with self._lock:
            user = self.users.get(user_id)
            if not user:
                return None
            updated = user.model_copy(update=fields)
            self.users[user_id] = updated
            return updated.model_copy()

    # Rooms

    async def create_room(self, room: Room, admin: RoomParticipant) -> Room:
        async with self._lock:
            if room.id in self.rooms:
                raise DuplicateKeyError(f"room id {room.id} already exists")
            if any(r.access_secret == room.access_secret for r in self.rooms.values()):
                raise DuplicateKeyError("room access secret already exists")
            self.rooms[room.id] = room.model_copy()
            self.participants[(admin.room_id, admin.user_id)] = admin.model_copy()
            return room.model_copy()

    async def get_room(self, room_id: str) -> Optional[Room]:
        room = self.rooms.get(room_id)
        return room.model_copy() if room else None

    async def update_room(self, room_id: str, fields: Dict[str, Any]) -> Optional[Room]:
        async with self._lock:
            room = self.rooms.get(room_id)
            if not room:
                return None
            updated = room.model_copy(update=fields)
            self.rooms[room_id] = updated
            return updated.model_copy()

    async def list_rooms_for_user(self, user_id: UUID) -> List[Room]:
        room_ids = {rid for (rid, uid) in self.participants if uid == user_id}
        rooms = [self.rooms[rid].model_copy() for rid in room_ids if rid in self.rooms]
        return sorted(rooms, key=lambda r: r.created_at, reverse=True)

    async def delete_room(self, room_id: str) -> bool:
        async with self._lock:
            if room_id not in self.rooms:
                return False
            for message_id in [m.id for m in self.messages.values() if m.room_id == room_id]:
                del self.messages[message_id]
            for key in [k for k in self.typing if k[0] == room_id]:
                del self.typing[key]
            for key in [k for k in self.participants if k[0] == room_id]:
                del self.participants[key]
            del self.rooms[room_id]
            return True

    # Participants

    async def get_participant(self, room_id: str, user_id: UUID) -> Optional[RoomParticipant]:
        participant = self.participants.get((room_id, user_id))
        return participant.model_copy() if participant else None

    async def count_participants(self, room_id: str) -> int:
        return sum(1 for (rid, _) in self.participants if rid == room_id)

    async def add_participant(self, participant: RoomParticipant, capacity: int) -> bool:
        async with self._lock:
            key = (participant.room_id, participant.user_id)
            if key in self.participants:
                raise DuplicateKeyError("participant already exists")
            if await self.count_participants(participant.room_id) >= capacity:
                return False
            self.participants[key] = participant.model_copy()
            return True

    async def list_participants(self, room_id: str) -> List[Tuple[RoomParticipant, str]]:
        result = []
        for (rid, uid), participant in self.participants.items():
            if rid != room_id:
                continue
            user = self.users.get(uid)
            result.append((participant.model_copy(), user.username if user else "Unknown"))
        return result

    async def set_admin(self, room_id: str, user_id: UUID, is_admin: bool) -> bool:
        async with self._lock:
            participant = self.participants.get((room_id, user_id))
            if not participant:
                return False
            self.participants[(room_id, user_id)] = participant.model_copy(update={"is_admin": is_admin})
            return True

    async def remove_participant(self, room_id: str, user_id: UUID) -> bool:
        async with self._lock:
            return self.participants.pop((room_id, user_id), None) is not None

    async def remove_participant_unless_last_admin(self, room_id: str, user_id: UUID) -> bool:
        async with self._lock:
            participant = self.participants.get((room_id, user_id))
            if not participant:
                return False
            if participant.is_admin and not any(
                p.is_admin and uid != user_id
                for (rid, uid), p in self.participants.items()
                if rid == room_id
            ):
                raise LastAdminError(f"user {user_id} is the last admin of room {room_id}")
            del self.participants[(room_id, user_id)]
            return True

    # Messages

    async def insert_message(self, message: Message) -> Message:
        async with self._lock:
            if message.id in self.messages:
                raise DuplicateKeyError(f"message {message.id} already exists")
            self.messages[message.id] = message.model_copy()
            return message.model_copy()

    async def get_message(self, message_id: UUID) -> Optional[Message]:
        message = self.messages.get(message_id)
        return message.model_copy() if message else None

    async def get_messages_by_id(self, message_ids: List[UUID]) -> Dict[UUID, Message]:
        return {
            mid: self.messages[mid].model_copy()
            for mid in message_ids
            if mid in self.messages
        }

    async def list_messages(self, room_id: str) -> List[Message]:
        messages = [m.model_copy() for m in self.messages.values() if m.room_id == room_id]
        return sorted(messages, key=lambda m: m.created_at)

    # Typing status

    async def upsert_typing(self, status: TypingStatus) -> TypingStatus:
        async with self._lock:
            self.typing[(status.room_id, status.user_id)] = status.model_copy()
            return status.model_copy()

    async def list_typing(self, room_id: str, updated_since: datetime) -> List[TypingStatus]:
        return [
            s.model_copy()
            for (rid, _), s in self.typing.items()
            if rid == room_id and s.is_typing and s.updated_at >= updated_since
        ]

    async def delete_typing(self, room_id: str, user_id: UUID) -> bool:
        async with self._lock:
            return self.typing.pop((room_id, user_id), None) is not None

    async def delete_typing_before(self, cutoff: datetime) -> int:
        async with self._lock:
            stale = [k for k, s in self.typing.items() if s.updated_at < cutoff]
            for key in stale:
                del self.typing[key]
            if stale:
                logger.debug(f"Purged {len(stale)} stale typing rows")
            return len(stale)
