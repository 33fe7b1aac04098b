from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from cryptotracker.config import get_settings


class Base(DeclarativeBase):
    pass


def build_engine(url: Optional[str] = None) -> AsyncEngine:
    """Create the async engine for the configured database (or ``url``)."""
    return create_async_engine(url or get_settings().database_url, echo=False)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    """Create the key-value table if it does not exist yet."""
    # Register ORM models on Base.metadata
    import cryptotracker.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
