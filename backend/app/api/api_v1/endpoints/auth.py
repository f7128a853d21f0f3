from typing import Any
from fastapi import APIRouter, Depends, status
from fastapi.security import OAuth2PasswordRequestForm

from ....core.deps import get_current_session, get_user_service
from ....core.exceptions import InvalidCredentialsError, NotFoundError
from ....core.session import SessionContext
from ....schemas.base import DataResponse
from ....schemas.user import SignupResponse, TokenResponse, UserCreate, UserResponse
from ....services.user_service import UserService

router = APIRouter()

@router.post("/signup", response_model=DataResponse[SignupResponse], status_code=status.HTTP_201_CREATED)
async def signup(
    user_in: UserCreate,
    user_service: UserService = Depends(get_user_service)
) -> Any:
    """
    Register a new user and log them in.
    """
    user = await user_service.create_user(user_in)
    access_token = user_service.create_access_token(user.id)
    return {
        "data": SignupResponse(
            user=UserResponse.model_validate(user),
            access_token=access_token,
        )
    }

@router.post("/login", response_model=TokenResponse)
async def login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    user_service: UserService = Depends(get_user_service)
) -> Any:
    """
    Login for access token.
    """
    user = await user_service.authenticate(form_data.username, form_data.password)
    if not user:
        raise InvalidCredentialsError(
            "Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return {
        "access_token": user_service.create_access_token(user.id),
        "token_type": "bearer"
    }

@router.get("/me", response_model=DataResponse[UserResponse])
async def read_me(
    session: SessionContext = Depends(get_current_session),
    user_service: UserService = Depends(get_user_service)
) -> Any:
    user = await user_service.get_user(session.user_id)
    if not user:
        raise NotFoundError("User not found")
    return {"data": UserResponse.model_validate(user)}
