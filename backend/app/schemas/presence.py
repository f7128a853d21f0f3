from pydantic import UUID4
from datetime import datetime

from .base import CamelModel

# Canonical typing status record
class TypingStatus(CamelModel):
    room_id: str
    user_id: UUID4
    username: str
    is_typing: bool = False
    updated_at: datetime

class TypingUpdate(CamelModel):
    is_typing: bool
