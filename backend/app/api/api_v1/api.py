from fastapi import APIRouter

from .endpoints import auth, rooms, chat, presence

api_router = APIRouter()
api_router.include_router(auth.router, prefix="/auth", tags=["authentication"])
api_router.include_router(rooms.router, prefix="/rooms", tags=["rooms"])
api_router.include_router(chat.router, prefix="/rooms", tags=["messages"])
api_router.include_router(presence.router, prefix="/rooms", tags=["typing"])
