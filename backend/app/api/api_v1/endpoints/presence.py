from typing import List
from fastapi import APIRouter, Depends

from ....core.deps import get_chat_service, get_current_session, get_typing_service
from ....core.session import SessionContext
from ....schemas.base import DataResponse
from ....schemas.presence import TypingStatus, TypingUpdate
from ....services.chat_service import ChatService
from ....services.typing_service import TypingService

router = APIRouter()

@router.get("/{room_id}/typing", response_model=DataResponse[List[str]])
async def get_typing_users(
    room_id: str,
    session: SessionContext = Depends(get_current_session),
    chat_service: ChatService = Depends(get_chat_service),
    typing_service: TypingService = Depends(get_typing_service)
):
    """
    Usernames of the other participants typing right now
    """
    await chat_service.require_participant(session, room_id)
    return {"data": await typing_service.get_typing_users(room_id, session.user_id)}

@router.put("/{room_id}/typing", response_model=DataResponse[TypingStatus])
async def set_typing(
    room_id: str,
    update: TypingUpdate,
    session: SessionContext = Depends(get_current_session),
    typing_service: TypingService = Depends(get_typing_service)
):
    return {"data": await typing_service.set_typing(session, room_id, update.is_typing)}
