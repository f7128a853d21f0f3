import logging
import uuid
from datetime import timedelta
from typing import Optional
from uuid import UUID

from ..core.clock import utcnow
from ..core.exceptions import ConflictError, InternalError
from ..core.security import create_access_token, get_password_hash, verify_password
from ..core.session import SessionContext
from ..schemas.user import User, UserCreate
from ..store.base import DuplicateKeyError, Store, StoreError

logger = logging.getLogger(__name__)

class UserService:
    def __init__(self, store: Store):
        self.store = store

    async def get_user(self, user_id: UUID) -> Optional[User]:
        return await self._call(self.store.get_user(user_id))

    async def get_user_by_username(self, username: str) -> Optional[User]:
        return await self._call(self.store.get_user_by_username(username))

    async def create_user(self, user_in: UserCreate) -> User:
        user = User(
            id=uuid.uuid4(),
            username=user_in.username,
            hashed_password=get_password_hash(user_in.password),
            created_at=utcnow(),
            last_seen=utcnow(),
        )
        try:
            user = await self.store.create_user(user)
        except DuplicateKeyError:
            logger.info(f"Signup rejected: username {user_in.username} already taken")
            raise ConflictError("Username already taken")
        except StoreError as e:
            logger.error(f"Failed to create user {user_in.username}: {e}")
            raise InternalError("Failed to create account")
        logger.info(f"User {user.id} signed up as {user.username}")
        return user

    async def authenticate(self, username: str, password: str) -> Optional[User]:
        """
        Check credentials and refresh last_seen.
        Returns None for an unknown user or a wrong password.
        """
        user = await self.get_user_by_username(username)
        if not user or not verify_password(password, user.hashed_password):
            logger.info(f"Failed login for username {username}")
            return None
        updated = await self._call(self.store.update_user(user.id, {"last_seen": utcnow()}))
        return updated or user

    def create_access_token(
        self, user_id: UUID, expires_delta: Optional[timedelta] = None
    ) -> str:
        return create_access_token(user_id, expires_delta)

    async def get_session(self, user_id: UUID) -> Optional[SessionContext]:
        user = await self.get_user(user_id)
        if not user:
            return None
        return SessionContext(
            user_id=user.id,
            username=user.username,
            current_room_id=user.current_room_id,
        )

    async def _call(self, awaitable):
        try:
            return await awaitable
        except StoreError as e:
            logger.error(f"Store failure in user service: {e}")
            raise InternalError()
