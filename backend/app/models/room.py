from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Text, Uuid
from sqlalchemy.orm import relationship
from ..core.clock import utcnow
from ..core.database import Base

class Room(Base):
    __tablename__ = "rooms"
    
    # 5-digit public identifier handed out with the access secret
    id = Column(String(16), primary_key=True)
    access_secret = Column(String(32), unique=True, nullable=False)
    name = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)
    created_by = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    
    # Relationships
    participants = relationship("RoomParticipant", back_populates="room")

class RoomParticipant(Base):
    __tablename__ = "room_participants"
    
    room_id = Column(String(16), ForeignKey("rooms.id"), primary_key=True, index=True)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), primary_key=True, index=True)
    is_admin = Column(Boolean, default=False, nullable=False)
    joined_at = Column(DateTime, default=utcnow, nullable=False)
    
    # Relationships
    room = relationship("Room", back_populates="participants")
    user = relationship("User", back_populates="room_participations")
