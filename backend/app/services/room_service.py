import logging
import secrets
from typing import List, Optional
from uuid import UUID

from ..core.clock import utcnow
from ..core.config import Settings, settings as default_settings
from ..core.exceptions import (
    CapacityExceededError,
    ForbiddenError,
    InternalError,
    InvalidCredentialsError,
    InvalidInputError,
    NotFoundError,
)
from ..core.metrics import ROOM_ID_COLLISIONS, ROOM_JOINS, ROOMS_CREATED, ROOMS_DELETED
from ..core.session import SessionContext
from ..core.tracing import get_tracer
from ..realtime.base import EventType, RealtimeChannel
from ..schemas.room import (
    Participant,
    Room,
    RoomCredentials,
    RoomCreate,
    RoomDetails,
    RoomParticipant,
    RoomSummary,
    RoomUpdate,
)
from ..store.base import DuplicateKeyError, LastAdminError, Store, StoreError

logger = logging.getLogger(__name__)
tracer = get_tracer()

# No 0/O, 1/I/l: secrets are read aloud and copied by hand
SECRET_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz23456789"

JOIN_FAILED_MESSAGE = "Failed to join room. Invalid room ID or password."

PARTICIPANTS_TABLE = "room_participants"
ROOMS_TABLE = "rooms"


def generate_room_id() -> str:
    """Random 5-digit public room identifier."""
    return str(secrets.randbelow(90000) + 10000)


def generate_access_secret(length: int = 7) -> str:
    return "".join(secrets.choice(SECRET_ALPHABET) for _ in range(length))


class RoomService:
    def __init__(self, store: Store, channel: RealtimeChannel, settings: Settings = default_settings):
        self.store = store
        self.channel = channel
        self.settings = settings

    async def create_room(self, session: SessionContext, room_data: Optional[RoomCreate] = None) -> RoomCredentials:
        """
        Create a room owned by the session user and make them its admin.

        The room id and secret are regenerated on collision; the room and the
        creator's admin row are written by the store as one unit.
        """
        room_data = room_data or RoomCreate()
        with tracer.start_as_current_span("room.create"):
            for attempt in range(1, self.settings.ROOM_ID_MAX_ATTEMPTS + 1):
                now = utcnow()
                room = Room(
                    id=generate_room_id(),
                    access_secret=generate_access_secret(self.settings.ROOM_SECRET_LENGTH),
                    name=room_data.name,
                    description=room_data.description,
                    created_by=session.user_id,
                    created_at=now,
                    updated_at=now,
                )
                admin = RoomParticipant(
                    room_id=room.id,
                    user_id=session.user_id,
                    is_admin=True,
                    joined_at=now,
                )
                try:
                    room = await self.store.create_room(room, admin)
                except DuplicateKeyError:
                    ROOM_ID_COLLISIONS.inc()
                    logger.info(f"Room id collision on attempt {attempt}, regenerating")
                    continue
                except StoreError as e:
                    logger.error(f"Failed to create room for user {session.user_id}: {e}")
                    raise InternalError("Failed to create room")

                ROOMS_CREATED.inc()
                logger.info(f"Room {room.id} created by user {session.user_id}")
                return RoomCredentials(room_id=room.id, access_secret=room.access_secret)

        logger.error(f"Gave up generating a unique room id after {self.settings.ROOM_ID_MAX_ATTEMPTS} attempts")
        raise InternalError("Failed to create room")

    async def join_room(self, session: SessionContext, room_id: str, password: str) -> bool:
        """
        Admit the session user to a room.

        A missing room and a wrong password raise the same error so callers
        cannot tell which room ids exist.
        """
        with tracer.start_as_current_span("room.join"):
            room = await self._load_room(room_id)
            if not room:
                logger.warning(f"Join failed: room {room_id} not found (user {session.user_id})")
                ROOM_JOINS.labels(result="rejected").inc()
                raise InvalidCredentialsError(JOIN_FAILED_MESSAGE)

            if not secrets.compare_digest(room.access_secret.encode(), password.encode()):
                logger.warning(f"Join failed: invalid password for room {room_id} (user {session.user_id})")
                ROOM_JOINS.labels(result="rejected").inc()
                raise InvalidCredentialsError(JOIN_FAILED_MESSAGE)

            existing = await self._call(self.store.get_participant(room_id, session.user_id))
            if existing:
                ROOM_JOINS.labels(result="rejoined").inc()
                await self._set_current_room(session, room_id)
                return True

            participant = RoomParticipant(
                room_id=room_id,
                user_id=session.user_id,
                is_admin=False,
                joined_at=utcnow(),
            )
            try:
                added = await self.store.add_participant(participant, self.settings.ROOM_CAPACITY)
            except DuplicateKeyError:
                # Lost a race with our own concurrent join; already a member
                added = True
            except StoreError as e:
                logger.error(f"Failed to add user {session.user_id} to room {room_id}: {e}")
                raise InternalError("Failed to join room")

            if not added:
                logger.info(f"Join failed: room {room_id} is full")
                ROOM_JOINS.labels(result="full").inc()
                raise CapacityExceededError("Room is full")

            ROOM_JOINS.labels(result="joined").inc()
            logger.info(f"User {session.user_id} joined room {room_id}")
            await self.channel.publish_change(
                PARTICIPANTS_TABLE, EventType.INSERT, room_id,
                participant.model_dump(mode="json"),
            )
            await self._set_current_room(session, room_id)
            return True

    async def is_room_admin(self, room_id: str, user_id: UUID) -> bool:
        participant = await self._call(self.store.get_participant(room_id, user_id))
        return bool(participant and participant.is_admin)

    async def get_room_details(self, room_id: str) -> RoomDetails:
        room = await self._load_room(room_id)
        if not room:
            raise NotFoundError("Room not found")
        return RoomDetails.model_validate(room)

    async def list_rooms(self, session: SessionContext) -> List[RoomSummary]:
        """Rooms the session user belongs to, newest first."""
        rooms = await self._call(self.store.list_rooms_for_user(session.user_id))
        summaries = []
        for room in rooms:
            count = await self._call(self.store.count_participants(room.id))
            is_admin = await self.is_room_admin(room.id, session.user_id)
            summaries.append(RoomSummary(
                id=room.id,
                name=room.name,
                description=room.description,
                created_at=room.created_at,
                created_by=room.created_by,
                participant_count=count,
                is_admin=is_admin,
                access_secret=room.access_secret if room.created_by == session.user_id else None,
            ))
        return summaries

    async def update_room_settings(
        self, session: SessionContext, room_id: str, room_update: RoomUpdate
    ) -> RoomDetails:
        if not await self.is_room_admin(room_id, session.user_id):
            logger.warning(f"User {session.user_id} is not admin of room {room_id}; update refused")
            raise ForbiddenError("You do not have permission to update this room")

        fields = room_update.model_dump(exclude_unset=True)
        if not fields:
            return await self.get_room_details(room_id)

        fields["updated_at"] = utcnow()
        room = await self._call(self.store.update_room(room_id, fields))
        if not room:
            raise NotFoundError("Room not found")

        logger.info(f"Room {room_id} settings updated by {session.user_id}: {sorted(fields)}")
        await self.channel.publish_change(
            ROOMS_TABLE, EventType.UPDATE, room_id,
            RoomDetails.model_validate(room).model_dump(mode="json"),
        )
        return RoomDetails.model_validate(room)

    async def list_participants(self, room_id: str) -> List[Participant]:
        if not await self._load_room(room_id):
            raise NotFoundError("Room not found")
        rows = await self._call(self.store.list_participants(room_id))
        return [
            Participant(
                id=participant.user_id,
                username=username,
                is_admin=participant.is_admin,
                joined_at=participant.joined_at,
            )
            for participant, username in rows
        ]

    async def remove_participant(self, session: SessionContext, room_id: str, target_id: UUID) -> bool:
        if not await self.is_room_admin(room_id, session.user_id):
            raise ForbiddenError("You do not have permission to remove users from this room")

        if target_id == session.user_id:
            raise InvalidInputError("Cannot remove yourself from the room")

        target = await self._call(self.store.get_participant(room_id, target_id))
        if not target:
            raise NotFoundError("User is not a participant in this room")
        if target.is_admin:
            raise ForbiddenError("Cannot remove another admin from the room")

        await self._call(self.store.remove_participant(room_id, target_id))
        await self._call(self.store.delete_typing(room_id, target_id))
        logger.info(f"User {target_id} removed from room {room_id} by {session.user_id}")
        await self.channel.publish_change(
            PARTICIPANTS_TABLE, EventType.DELETE, room_id,
            {"room_id": room_id, "user_id": str(target_id)},
        )
        return True

    async def promote_to_admin(self, session: SessionContext, room_id: str, target_id: UUID) -> bool:
        if not await self.is_room_admin(room_id, session.user_id):
            raise ForbiddenError("You do not have permission to add admins to this room")

        if not await self._call(self.store.set_admin(room_id, target_id, True)):
            raise NotFoundError("User is not a participant in this room")

        logger.info(f"User {target_id} promoted to admin of room {room_id} by {session.user_id}")
        await self.channel.publish_change(
            PARTICIPANTS_TABLE, EventType.UPDATE, room_id,
            {"room_id": room_id, "user_id": str(target_id), "is_admin": True},
        )
        return True

    async def leave_room(self, session: SessionContext, room_id: str) -> bool:
        """
        Remove the session user from a room. The last admin cannot leave;
        they must promote someone else or delete the room.
        """
        try:
            removed = await self._call(
                self.store.remove_participant_unless_last_admin(room_id, session.user_id)
            )
        except LastAdminError:
            raise InvalidInputError(
                "The last admin cannot leave the room; promote another admin or delete the room"
            )
        if not removed:
            raise NotFoundError("User is not a participant in this room")

        await self._call(self.store.delete_typing(room_id, session.user_id))
        if session.current_room_id == room_id:
            session.current_room_id = None
            await self._call(self.store.update_user(session.user_id, {"current_room_id": None}))

        logger.info(f"User {session.user_id} left room {room_id}")
        await self.channel.publish_change(
            PARTICIPANTS_TABLE, EventType.DELETE, room_id,
            {"room_id": room_id, "user_id": str(session.user_id)},
        )
        return True

    async def delete_room(self, session: SessionContext, room_id: str) -> bool:
        """
        Delete a room with all its messages and participants (admin only).

        The store removes children before the room in one transaction, so a
        failure leaves everything in place.
        """
        with tracer.start_as_current_span("room.delete"):
            if not await self.is_room_admin(room_id, session.user_id):
                logger.warning(f"User {session.user_id} is not admin of room {room_id}; delete refused")
                raise ForbiddenError("You do not have permission to delete this room")

            try:
                deleted = await self.store.delete_room(room_id)
            except StoreError as e:
                logger.error(f"Failed to delete room {room_id}: {e}")
                raise InternalError("Failed to delete room")

            if not deleted:
                raise NotFoundError("Room not found")

            ROOMS_DELETED.inc()
            logger.info(f"Room {room_id} deleted by {session.user_id}")
            if session.current_room_id == room_id:
                session.current_room_id = None
            await self.channel.publish_change(ROOMS_TABLE, EventType.DELETE, room_id, {"id": room_id})
            return True

    async def _load_room(self, room_id: str):
        return await self._call(self.store.get_room(room_id))

    async def _set_current_room(self, session: SessionContext, room_id: str) -> None:
        session.current_room_id = room_id
        await self._call(self.store.update_user(session.user_id, {"current_room_id": room_id}))

    async def _call(self, awaitable):
        try:
            return await awaitable
        except StoreError as e:
            logger.error(f"Store failure in room service: {e}")
            raise InternalError()
