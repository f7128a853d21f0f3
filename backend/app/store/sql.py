import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import and_, delete, func, select, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models.chat import Message as MessageRow
from ..models.presence import TypingStatus as TypingRow
from ..models.room import Room as RoomRow, RoomParticipant as ParticipantRow
from ..models.user import User as UserRow
from ..schemas.chat import Message
from ..schemas.presence import TypingStatus
from ..schemas.room import Room, RoomParticipant
from ..schemas.user import User
from .base import DuplicateKeyError, LastAdminError, Store, StoreError

logger = logging.getLogger(__name__)

# SQLSTATE for unique_violation
UNIQUE_VIOLATION = "23505"


def is_unique_violation(error: IntegrityError) -> bool:
    """True if the integrity error came from a unique or primary key constraint."""
    orig = error.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code:
        return code == UNIQUE_VIOLATION
    message = str(orig)
    return "UNIQUE constraint failed" in message or "duplicate key" in message


class SqlStore(Store):
    """
    Store backed by SQLAlchemy's async ORM.

    Each public method runs in its own transaction. Rows are converted to the
    canonical schemas before they leave this module.
    """

    def __init__(self, session_factory: async_sessionmaker, engine=None):
        self.session_factory = session_factory
        self.engine = engine
        # SQLite ignores FOR UPDATE; membership changes are also serialized in-process
        self._membership_lock = asyncio.Lock()

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
            logger.info("Database engine disposed.")

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            try:
                async with session.begin():
                    yield session
            except IntegrityError as e:
                if is_unique_violation(e):
                    logger.warning(f"Unique violation: {e.orig}")
                    raise DuplicateKeyError(str(e.orig)) from e
                logger.error(f"Integrity violation: {e.orig}")
                raise StoreError(f"integrity violation: {e.orig}") from e
            except SQLAlchemyError as e:
                logger.exception(f"Database error: {e}")
                raise StoreError("database operation failed") from e

    async def ping(self) -> bool:
        try:
            async with self._transaction() as db:
                await db.execute(text("SELECT 1"))
        except (StoreError, OSError) as e:
            logger.error(f"Database ping failed: {e}")
            return False
        return True

    # Users

    async def create_user(self, user: User) -> User:
        async with self._transaction() as db:
            row = UserRow(**user.model_dump())
            db.add(row)
            await db.flush()
            return User.model_validate(row)

    async def get_user(self, user_id: UUID) -> Optional[User]:
        async with self._transaction() as db:
            row = await db.get(UserRow, user_id)
            return User.model_validate(row) if row else None

    async def get_user_by_username(self, username: str) -> Optional[User]:
        async with self._transaction() as db:
            result = await db.execute(select(UserRow).where(UserRow.username == username))
            row = result.scalars().first()
            return User.model_validate(row) if row else None

    async def update_user(self, user_id: UUID, fields: Dict[str, Any]) -> Optional[User]:
        async with self._transaction() as db:
            row = await db.get(UserRow, user_id)
            if not row:
                return None
            for key, value in fields.items():
                setattr(row, key, value)
            await db.flush()
            return User.model_validate(row)

    # Rooms

    async def create_room(self, room: Room, admin: RoomParticipant) -> Room:
        async with self._transaction() as db:
            row = RoomRow(**room.model_dump())
            db.add(row)
            # Room must exist before the participant FK points at it
            await db.flush()
            db.add(ParticipantRow(**admin.model_dump()))
            await db.flush()
            return Room.model_validate(row)

    async def get_room(self, room_id: str) -> Optional[Room]:
        async with self._transaction() as db:
            row = await db.get(RoomRow, room_id)
            return Room.model_validate(row) if row else None

    async def update_room(self, room_id: str, fields: Dict[str, Any]) -> Optional[Room]:
        async with self._transaction() as db:
            row = await db.get(RoomRow, room_id)
            if not row:
                return None
            for key, value in fields.items():
                setattr(row, key, value)
            await db.flush()
            await db.refresh(row)
            return Room.model_validate(row)

    async def list_rooms_for_user(self, user_id: UUID) -> List[Room]:
        async with self._transaction() as db:
            query = select(RoomRow).join(
                ParticipantRow, RoomRow.id == ParticipantRow.room_id
            ).where(
                ParticipantRow.user_id == user_id
            ).order_by(RoomRow.created_at.desc())
            result = await db.execute(query)
            return [Room.model_validate(row) for row in result.scalars().all()]

    async def delete_room(self, room_id: str) -> bool:
        async with self._transaction() as db:
            await db.execute(delete(MessageRow).where(MessageRow.room_id == room_id))
            await db.execute(delete(TypingRow).where(TypingRow.room_id == room_id))
            await db.execute(delete(ParticipantRow).where(ParticipantRow.room_id == room_id))
            result = await db.execute(delete(RoomRow).where(RoomRow.id == room_id))
            return result.rowcount > 0

    # Participants

    async def get_participant(self, room_id: str, user_id: UUID) -> Optional[RoomParticipant]:
        async with self._transaction() as db:
            row = await db.get(ParticipantRow, (room_id, user_id))
            return RoomParticipant.model_validate(row) if row else None

    async def count_participants(self, room_id: str) -> int:
        async with self._transaction() as db:
            return await self._count(db, room_id)

    async def _count(self, db: AsyncSession, room_id: str) -> int:
        result = await db.execute(
            select(func.count()).select_from(ParticipantRow).where(ParticipantRow.room_id == room_id)
        )
        return result.scalar() or 0

    async def add_participant(self, participant: RoomParticipant, capacity: int) -> bool:
        async with self._membership_lock, self._transaction() as db:
            # Row lock on the room serializes concurrent joins
            locked = await db.execute(
                select(RoomRow.id).where(RoomRow.id == participant.room_id).with_for_update()
            )
            if locked.scalar() is None:
                raise StoreError(f"room {participant.room_id} does not exist")

            existing = await db.get(ParticipantRow, (participant.room_id, participant.user_id))
            if existing:
                raise DuplicateKeyError("participant already exists")

            if await self._count(db, participant.room_id) >= capacity:
                return False

            db.add(ParticipantRow(**participant.model_dump()))
            await db.flush()
            return True

    async def list_participants(self, room_id: str) -> List[Tuple[RoomParticipant, str]]:
        async with self._transaction() as db:
            query = select(ParticipantRow, UserRow.username).outerjoin(
                UserRow, ParticipantRow.user_id == UserRow.id
            ).where(
                ParticipantRow.room_id == room_id
            ).order_by(ParticipantRow.joined_at)
            result = await db.execute(query)
            return [
                (RoomParticipant.model_validate(row), username or "Unknown")
                for row, username in result.all()
            ]

    async def set_admin(self, room_id: str, user_id: UUID, is_admin: bool) -> bool:
        async with self._transaction() as db:
            row = await db.get(ParticipantRow, (room_id, user_id))
            if not row:
                return False
            row.is_admin = is_admin
            return True

    async def remove_participant(self, room_id: str, user_id: UUID) -> bool:
        async with self._transaction() as db:
            result = await db.execute(
                delete(ParticipantRow).where(
                    and_(
                        ParticipantRow.room_id == room_id,
                        ParticipantRow.user_id == user_id
                    )
                )
            )
            return result.rowcount > 0

    async def remove_participant_unless_last_admin(self, room_id: str, user_id: UUID) -> bool:
        async with self._membership_lock, self._transaction() as db:
            await db.execute(select(RoomRow.id).where(RoomRow.id == room_id).with_for_update())

            row = await db.get(ParticipantRow, (room_id, user_id))
            if not row:
                return False

            if row.is_admin:
                result = await db.execute(
                    select(func.count()).select_from(ParticipantRow).where(
                        and_(
                            ParticipantRow.room_id == room_id,
                            ParticipantRow.is_admin.is_(True),
                            ParticipantRow.user_id != user_id
                        )
                    )
                )
                if not result.scalar():
                    raise LastAdminError(f"user {user_id} is the last admin of room {room_id}")

            await db.delete(row)
            await db.flush()
            return True

    # Messages

    async def insert_message(self, message: Message) -> Message:
        async with self._transaction() as db:
            row = MessageRow(**message.model_dump())
            db.add(row)
            await db.flush()
            return Message.model_validate(row)

    async def get_message(self, message_id: UUID) -> Optional[Message]:
        async with self._transaction() as db:
            row = await db.get(MessageRow, message_id)
            return Message.model_validate(row) if row else None

    async def get_messages_by_id(self, message_ids: List[UUID]) -> Dict[UUID, Message]:
        if not message_ids:
            return {}
        async with self._transaction() as db:
            result = await db.execute(select(MessageRow).where(MessageRow.id.in_(message_ids)))
            return {row.id: Message.model_validate(row) for row in result.scalars().all()}

    async def list_messages(self, room_id: str) -> List[Message]:
        async with self._transaction() as db:
            result = await db.execute(
                select(MessageRow).where(
                    MessageRow.room_id == room_id
                ).order_by(MessageRow.created_at)
            )
            return [Message.model_validate(row) for row in result.scalars().all()]

    # Typing status

    async def upsert_typing(self, status: TypingStatus) -> TypingStatus:
        async with self._transaction() as db:
            row = await db.get(TypingRow, (status.room_id, status.user_id))
            if row:
                row.username = status.username
                row.is_typing = status.is_typing
                row.updated_at = status.updated_at
            else:
                row = TypingRow(**status.model_dump())
                db.add(row)
            await db.flush()
            return TypingStatus.model_validate(row)

    async def list_typing(self, room_id: str, updated_since: datetime) -> List[TypingStatus]:
        async with self._transaction() as db:
            result = await db.execute(
                select(TypingRow).where(
                    and_(
                        TypingRow.room_id == room_id,
                        TypingRow.is_typing.is_(True),
                        TypingRow.updated_at >= updated_since
                    )
                )
            )
            return [TypingStatus.model_validate(row) for row in result.scalars().all()]

    async def delete_typing(self, room_id: str, user_id: UUID) -> bool:
        async with self._transaction() as db:
            result = await db.execute(
                delete(TypingRow).where(
                    and_(
                        TypingRow.room_id == room_id,
                        TypingRow.user_id == user_id
                    )
                )
            )
            return result.rowcount > 0

    async def delete_typing_before(self, cutoff: datetime) -> int:
        async with self._transaction() as db:
            result = await db.execute(delete(TypingRow).where(TypingRow.updated_at < cutoff))
            return result.rowcount or 0
