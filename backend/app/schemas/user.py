import re
from typing import Optional
from pydantic import UUID4, BaseModel, Field, field_validator
from datetime import datetime

from .base import CamelModel

PASSWORD_REGEX = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[^A-Za-z0-9]).{8,}$")

# Canonical user record
class User(CamelModel):
    id: UUID4
    username: str
    hashed_password: str
    created_at: datetime
    last_seen: Optional[datetime] = None
    current_room_id: Optional[str] = None

class UserCreate(CamelModel):
    username: str = Field(..., max_length=64)
    password: str

    @field_validator("username")
    def validate_username(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 7:
            raise ValueError("Username must be at least 7 characters")
        if not any(ch.isdigit() for ch in v):
            raise ValueError("Username must contain at least one number")
        return v

    @field_validator("password")
    def validate_password(cls, v: str) -> str:
        if not PASSWORD_REGEX.match(v):
            raise ValueError(
                "Password must be at least 8 characters with uppercase, lowercase, number and special character"
            )
        return v

class UserResponse(CamelModel):
    id: UUID4
    username: str
    created_at: datetime
    last_seen: Optional[datetime] = None
    current_room_id: Optional[str] = None

# Plain snake_case: OAuth2 clients expect access_token/token_type
class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"

class SignupResponse(CamelModel):
    user: UserResponse
    access_token: str
    token_type: str = "bearer"
