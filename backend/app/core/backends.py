import logging

from .config import Settings
from .database import build_engine, build_session_factory, create_tables
from ..realtime.base import RealtimeChannel
from ..realtime.memory import InMemoryChannel
from ..realtime.redis_channel import RedisChannel
from ..store.base import Store
from ..store.memory import MemoryStore
from ..store.sql import SqlStore

logger = logging.getLogger(__name__)


async def build_store(settings: Settings) -> Store:
    """Create and connect the store selected by STORE_BACKEND."""
    if settings.STORE_BACKEND == "memory":
        logger.info("Using in-memory store.")
        return MemoryStore()

    engine = build_engine(settings.SQLALCHEMY_DATABASE_URI)
    if settings.DB_CREATE_TABLES:
        await create_tables(engine)
    logger.info("Using SQL store.")
    return SqlStore(build_session_factory(engine), engine=engine)


async def build_channel(settings: Settings) -> RealtimeChannel:
    """Create and connect the realtime channel selected by REALTIME_BACKEND."""
    if settings.REALTIME_BACKEND == "memory":
        logger.info("Using in-memory realtime channel.")
        channel = InMemoryChannel()
    else:
        channel = RedisChannel(settings.REDIS_URL)
    await channel.connect()
    return channel
