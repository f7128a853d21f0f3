from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from ..schemas.chat import Message
from ..schemas.presence import TypingStatus
from ..schemas.room import Room, RoomParticipant
from ..schemas.user import User


class DuplicateKeyError(Exception):
    """Raised by a store when an insert collides with a unique key."""


class StoreError(Exception):
    """Raised by a store when the backend fails unexpectedly."""


class LastAdminError(Exception):
    """Raised when removing a participant would leave a room without an admin."""


class Store(ABC):
    """
    Persistence boundary for users, rooms, participants, messages and typing
    status.

    Every method returns canonical schema objects, never backend rows, so the
    services above behave identically on any implementation.
    """

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def ping(self) -> bool: ...

    # Users

    @abstractmethod
    async def create_user(self, user: User) -> User:
        """Insert a user. Raises DuplicateKeyError if the username is taken."""

    @abstractmethod
    async def get_user(self, user_id: UUID) -> Optional[User]: ...

    @abstractmethod
    async def get_user_by_username(self, username: str) -> Optional[User]: ...

    @abstractmethod
    async def update_user(self, user_id: UUID, fields: Dict[str, Any]) -> Optional[User]: ...

    # Rooms

    @abstractmethod
    async def create_room(self, room: Room, admin: RoomParticipant) -> Room:
        """
        Insert a room together with its first admin participant as one unit.
        Raises DuplicateKeyError if the room id or access secret is taken.
        """

    @abstractmethod
    async def get_room(self, room_id: str) -> Optional[Room]: ...

    @abstractmethod
    async def update_room(self, room_id: str, fields: Dict[str, Any]) -> Optional[Room]: ...

    @abstractmethod
    async def list_rooms_for_user(self, user_id: UUID) -> List[Room]: ...

    @abstractmethod
    async def delete_room(self, room_id: str) -> bool:
        """
        Delete messages, typing rows, participants and finally the room.
        Either all of it happens or a StoreError is raised.
        """

    # Participants

    @abstractmethod
    async def get_participant(self, room_id: str, user_id: UUID) -> Optional[RoomParticipant]: ...

    @abstractmethod
    async def count_participants(self, room_id: str) -> int: ...

    @abstractmethod
    async def add_participant(self, participant: RoomParticipant, capacity: int) -> bool:
        """
        Insert a participant if the room holds fewer than `capacity` rows.
        The count and insert happen atomically. Returns False when full;
        raises DuplicateKeyError if the user is already in the room.
        """

    @abstractmethod
    async def list_participants(self, room_id: str) -> List[Tuple[RoomParticipant, str]]:
        """Participants of a room paired with their current username."""

    @abstractmethod
    async def set_admin(self, room_id: str, user_id: UUID, is_admin: bool) -> bool: ...

    @abstractmethod
    async def remove_participant(self, room_id: str, user_id: UUID) -> bool: ...

    @abstractmethod
    async def remove_participant_unless_last_admin(self, room_id: str, user_id: UUID) -> bool:
        """
        Remove a participant unless they are the only admin of the room.
        The admin check and the delete happen atomically. Returns False if
        the user is not a participant; raises LastAdminError if they are the
        last admin.
        """

    # Messages

    @abstractmethod
    async def insert_message(self, message: Message) -> Message: ...

    @abstractmethod
    async def get_message(self, message_id: UUID) -> Optional[Message]: ...

    @abstractmethod
    async def get_messages_by_id(self, message_ids: List[UUID]) -> Dict[UUID, Message]: ...

    @abstractmethod
    async def list_messages(self, room_id: str) -> List[Message]:
        """Messages of a room, oldest first."""

    # Typing status

    @abstractmethod
    async def upsert_typing(self, status: TypingStatus) -> TypingStatus: ...

    @abstractmethod
    async def list_typing(self, room_id: str, updated_since: datetime) -> List[TypingStatus]:
        """Rows with is_typing set and updated at or after `updated_since`."""

    @abstractmethod
    async def delete_typing(self, room_id: str, user_id: UUID) -> bool: ...

    @abstractmethod
    async def delete_typing_before(self, cutoff: datetime) -> int: ...
