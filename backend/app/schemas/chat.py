from typing import Optional
from pydantic import UUID4, Field, model_validator
from datetime import datetime

from .base import CamelModel

# Canonical message record
class Message(CamelModel):
    id: UUID4
    room_id: str
    user_id: UUID4
    username: str
    content: str = ""
    image_url: Optional[str] = None
    file_url: Optional[str] = None
    file_type: Optional[str] = None
    reply_to_id: Optional[UUID4] = None
    created_at: datetime

class ReplyPreview(CamelModel):
    id: UUID4
    username: str
    content: str
    created_at: datetime

class MessageWithReply(Message):
    reply_to_message: Optional[ReplyPreview] = None

class MessageCreate(CamelModel):
    content: str = Field("", max_length=4000)
    reply_to_id: Optional[UUID4] = None
    image_url: Optional[str] = None
    file_url: Optional[str] = None
    file_type: Optional[str] = None

    @model_validator(mode="after")
    def require_body(self):
        if not self.content.strip() and not self.image_url and not self.file_url:
            raise ValueError("Message must have content or an attachment")
        return self

class Attachment(CamelModel):
    url: str
    file_type: str
    size: int
