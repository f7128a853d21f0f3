from typing import List
from fastapi import APIRouter, Depends, File, UploadFile, status

from ....core.deps import get_attachment_service, get_chat_service, get_current_session
from ....core.session import SessionContext
from ....schemas.base import DataResponse
from ....schemas.chat import Attachment, MessageCreate, MessageWithReply
from ....services.attachment_service import AttachmentService
from ....services.chat_service import ChatService

router = APIRouter()

@router.get("/{room_id}/messages", response_model=DataResponse[List[MessageWithReply]])
async def get_room_messages(
    room_id: str,
    session: SessionContext = Depends(get_current_session),
    chat_service: ChatService = Depends(get_chat_service)
):
    """
    Message history for a room, oldest first (participants only)
    """
    await chat_service.require_participant(session, room_id)
    return {"data": await chat_service.get_room_messages(room_id)}

@router.post(
    "/{room_id}/messages",
    response_model=DataResponse[MessageWithReply],
    status_code=status.HTTP_201_CREATED,
)
async def send_message(
    room_id: str,
    message_in: MessageCreate,
    session: SessionContext = Depends(get_current_session),
    chat_service: ChatService = Depends(get_chat_service)
):
    return {"data": await chat_service.send_message(session, room_id, message_in)}

@router.post(
    "/{room_id}/attachments",
    response_model=DataResponse[Attachment],
    status_code=status.HTTP_201_CREATED,
)
async def upload_attachment(
    room_id: str,
    file: UploadFile = File(...),
    session: SessionContext = Depends(get_current_session),
    attachment_service: AttachmentService = Depends(get_attachment_service)
):
    """
    Upload an image and get back the URL to send with a message
    """
    # One byte past the limit is enough to reject an oversize upload
    data = await file.read(attachment_service.settings.MAX_UPLOAD_BYTES + 1)
    attachment = await attachment_service.upload_attachment(
        session, room_id, file.content_type or "", data
    )
    return {"data": attachment}
