from dataclasses import dataclass
from typing import Optional
from uuid import UUID


@dataclass
class SessionContext:
    """
    Per-connection identity passed explicitly to service calls.

    One instance is built for every authenticated request or websocket.
    """
    user_id: UUID
    username: str
    current_room_id: Optional[str] = None
