import uuid
from sqlalchemy import Column, String, DateTime, ForeignKey, Text, Uuid
from ..core.clock import utcnow
from ..core.database import Base

class Message(Base):
    __tablename__ = "messages"
    
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    room_id = Column(String(16), ForeignKey("rooms.id"), nullable=False, index=True)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    # Snapshot of the sender's name at send time
    username = Column(String, nullable=False)
    content = Column(Text, nullable=False, default="")
    image_url = Column(String, nullable=True)
    file_url = Column(String, nullable=True)
    file_type = Column(String, nullable=True)
    # No FK: a dangling reply only loses its preview
    reply_to_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
