from typing import Optional

from fastapi import HTTPException, status


class ChatError(HTTPException):
    """
    Base class for errors raised by the service layer.

    Subclasses carry the status code so endpoints can let them propagate and
    the app-level handler renders them as {"error": message}.
    """
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None, headers: Optional[dict] = None):
        super().__init__(
            status_code=self.status_code,
            detail=message or self.default_message,
            headers=headers,
        )

    @property
    def message(self) -> str:
        return self.detail


class NotFoundError(ChatError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Not found"


class ForbiddenError(ChatError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "You do not have permission to perform this action"


class CapacityExceededError(ChatError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Room is full"


class ConflictError(ChatError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Resource already exists"


class InvalidInputError(ChatError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request"


class InvalidCredentialsError(ChatError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Invalid credentials"


class InternalError(ChatError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Internal server error"
