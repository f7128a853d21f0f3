from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

# Create a declarative base for models
Base = declarative_base()


def build_engine(database_uri: str, **kwargs) -> AsyncEngine:
    """Create the SQLAlchemy async engine for the configured database."""
    return create_async_engine(database_uri, echo=False, future=True, **kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


async def create_tables(engine: AsyncEngine) -> None:
    # Register every model on Base.metadata before creating tables
    from ..models import chat, presence, room, user  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
