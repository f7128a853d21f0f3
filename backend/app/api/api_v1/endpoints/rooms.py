from typing import List, Optional
from uuid import UUID
from fastapi import APIRouter, Body, Depends, status

from ....core.deps import get_current_session, get_room_service
from ....core.exceptions import ForbiddenError
from ....core.session import SessionContext
from ....schemas.base import DataResponse
from ....schemas.room import (
    AdminStatus,
    Participant,
    RoomCreate,
    RoomCredentials,
    RoomDetails,
    RoomJoin,
    RoomSummary,
    RoomUpdate,
)
from ....services.room_service import RoomService

router = APIRouter()

@router.get("", response_model=DataResponse[List[RoomSummary]])
async def list_rooms(
    session: SessionContext = Depends(get_current_session),
    room_service: RoomService = Depends(get_room_service)
):
    """
    Rooms the current user belongs to.
    """
    return {"data": await room_service.list_rooms(session)}

@router.post("", response_model=DataResponse[RoomCredentials], status_code=status.HTTP_201_CREATED)
async def create_room(
    room_data: Optional[RoomCreate] = Body(None),
    session: SessionContext = Depends(get_current_session),
    room_service: RoomService = Depends(get_room_service)
):
    """
    Create a new room. The response carries the access secret, shown once.
    """
    return {"data": await room_service.create_room(session, room_data)}

@router.post("/{room_id}/join", response_model=DataResponse[RoomDetails])
async def join_room(
    room_id: str,
    join_data: RoomJoin,
    session: SessionContext = Depends(get_current_session),
    room_service: RoomService = Depends(get_room_service)
):
    await room_service.join_room(session, room_id, join_data.password)
    return {"data": await room_service.get_room_details(room_id)}

@router.post("/{room_id}/leave", response_model=DataResponse[bool])
async def leave_room(
    room_id: str,
    session: SessionContext = Depends(get_current_session),
    room_service: RoomService = Depends(get_room_service)
):
    return {"data": await room_service.leave_room(session, room_id)}

@router.get("/{room_id}", response_model=DataResponse[RoomDetails])
async def get_room(
    room_id: str,
    session: SessionContext = Depends(get_current_session),
    room_service: RoomService = Depends(get_room_service)
):
    return {"data": await room_service.get_room_details(room_id)}

@router.put("/{room_id}", response_model=DataResponse[RoomDetails])
async def update_room(
    room_id: str,
    room_update: RoomUpdate,
    session: SessionContext = Depends(get_current_session),
    room_service: RoomService = Depends(get_room_service)
):
    """
    Update name and/or description (admins only).
    """
    return {"data": await room_service.update_room_settings(session, room_id, room_update)}

@router.delete("/{room_id}", response_model=DataResponse[bool])
async def delete_room(
    room_id: str,
    session: SessionContext = Depends(get_current_session),
    room_service: RoomService = Depends(get_room_service)
):
    """
    Delete a room with its messages and participants (admins only).
    """
    return {"data": await room_service.delete_room(session, room_id)}

@router.get("/{room_id}/admin", response_model=DataResponse[AdminStatus])
async def get_admin_status(
    room_id: str,
    session: SessionContext = Depends(get_current_session),
    room_service: RoomService = Depends(get_room_service)
):
    is_admin = await room_service.is_room_admin(room_id, session.user_id)
    return {"data": AdminStatus(room_id=room_id, is_admin=is_admin)}

@router.get("/{room_id}/participants", response_model=DataResponse[List[Participant]])
async def list_participants(
    room_id: str,
    session: SessionContext = Depends(get_current_session),
    room_service: RoomService = Depends(get_room_service)
):
    participants = await room_service.list_participants(room_id)
    if not any(p.id == session.user_id for p in participants):
        raise ForbiddenError("User is not a participant in this room")
    return {"data": participants}

@router.delete("/{room_id}/participants/{user_id}", response_model=DataResponse[bool])
async def remove_participant(
    room_id: str,
    user_id: UUID,
    session: SessionContext = Depends(get_current_session),
    room_service: RoomService = Depends(get_room_service)
):
    return {"data": await room_service.remove_participant(session, room_id, user_id)}

@router.post("/{room_id}/participants/{user_id}/admin", response_model=DataResponse[bool])
async def promote_participant(
    room_id: str,
    user_id: UUID,
    session: SessionContext = Depends(get_current_session),
    room_service: RoomService = Depends(get_room_service)
):
    return {"data": await room_service.promote_to_admin(session, room_id, user_id)}
