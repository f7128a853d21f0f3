from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Uuid
from ..core.clock import utcnow
from ..core.database import Base

class TypingStatus(Base):
    __tablename__ = "user_typing"
    
    room_id = Column(String(16), ForeignKey("rooms.id"), primary_key=True, index=True)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), primary_key=True)
    username = Column(String, nullable=False)
    is_typing = Column(Boolean, default=False, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False, index=True)
