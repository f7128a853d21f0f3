from typing import Optional
from uuid import UUID

from fastapi import Depends, HTTPException, Request, WebSocket, status
from fastapi.security import OAuth2PasswordBearer

from ..core.config import Settings, settings
from ..core.security import decode_access_token
from ..core.session import SessionContext
from ..realtime.base import RealtimeChannel
from ..services.attachment_service import AttachmentService
from ..services.chat_service import ChatService
from ..services.room_service import RoomService
from ..services.typing_service import TypingService
from ..services.user_service import UserService
from ..store.base import Store

oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.API_V1_STR}/auth/login")


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> Store:
    """
    Dependency for the store built at startup.
    """
    return request.app.state.store


def get_channel(request: Request) -> RealtimeChannel:
    return request.app.state.channel


def get_user_service(store: Store = Depends(get_store)) -> UserService:
    return UserService(store)


def get_room_service(
    store: Store = Depends(get_store),
    channel: RealtimeChannel = Depends(get_channel),
    settings: Settings = Depends(get_settings),
) -> RoomService:
    return RoomService(store, channel, settings)


def get_chat_service(
    store: Store = Depends(get_store),
    channel: RealtimeChannel = Depends(get_channel),
) -> ChatService:
    return ChatService(store, channel)


def get_typing_service(
    store: Store = Depends(get_store),
    channel: RealtimeChannel = Depends(get_channel),
    settings: Settings = Depends(get_settings),
) -> TypingService:
    return TypingService(store, channel, settings)


def get_attachment_service(
    store: Store = Depends(get_store),
    settings: Settings = Depends(get_settings),
) -> AttachmentService:
    return AttachmentService(store, settings)


async def session_from_token(token: str, user_service: UserService) -> Optional[SessionContext]:
    """
    Resolve a bearer token into a session. Returns None for a bad or
    expired token or a user that no longer exists.
    """
    payload = decode_access_token(token)
    if not payload or not payload.get("sub"):
        return None
    try:
        user_id = UUID(payload["sub"])
    except ValueError:
        return None
    return await user_service.get_session(user_id)


async def get_current_session(
    token: str = Depends(oauth2_scheme),
    user_service: UserService = Depends(get_user_service),
) -> SessionContext:
    """
    Validate token and build the session context for this request.
    """
    session = await session_from_token(token, user_service)
    if not session:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return session


async def get_websocket_session(websocket: WebSocket, token: str) -> Optional[SessionContext]:
    """
    Like get_current_session but for WebSocket connections, which cannot
    carry an Authorization header from browsers. Doesn't raise.
    """
    user_service = UserService(websocket.app.state.store)
    return await session_from_token(token, user_service)
