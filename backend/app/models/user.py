import uuid
from sqlalchemy import Column, String, DateTime, Uuid
from sqlalchemy.orm import relationship
from ..core.clock import utcnow
from ..core.database import Base

class User(Base):
    __tablename__ = "users"
    
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    username = Column(String, unique=True, nullable=False, index=True)
    hashed_password = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    last_seen = Column(DateTime, nullable=True)
    # Last room joined; restored into the session on the next request
    current_room_id = Column(String, nullable=True)
    
    # Relationships
    room_participations = relationship("RoomParticipant", back_populates="user")
