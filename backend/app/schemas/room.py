from typing import Optional
from pydantic import UUID4, Field
from datetime import datetime

from .base import CamelModel

# Canonical room record
class Room(CamelModel):
    id: str
    access_secret: str
    name: Optional[str] = None
    description: Optional[str] = None
    created_by: UUID4
    created_at: datetime
    updated_at: Optional[datetime] = None

# Canonical participant record
class RoomParticipant(CamelModel):
    room_id: str
    user_id: UUID4
    is_admin: bool = False
    joined_at: datetime

class RoomCreate(CamelModel):
    name: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=500)

class RoomUpdate(CamelModel):
    name: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=500)

class RoomJoin(CamelModel):
    password: str = Field(..., min_length=1)

class RoomCredentials(CamelModel):
    room_id: str
    access_secret: str

class RoomDetails(CamelModel):
    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime
    created_by: UUID4

class RoomSummary(RoomDetails):
    participant_count: int
    is_admin: bool = False
    # Only filled in for rooms the caller created
    access_secret: Optional[str] = None

class Participant(CamelModel):
    id: UUID4
    username: str
    is_admin: bool
    joined_at: datetime

class AdminStatus(CamelModel):
    room_id: str
    is_admin: bool
