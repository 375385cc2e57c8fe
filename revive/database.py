"""
Store access for the engine.

Everything that touches the store (the Engine facade, the three workers, the
request handlers) takes an async_sessionmaker and opens one short session
per unit of work: one claimed queue row, one account tick, one request.
get_session_factory() is the process-wide factory built from settings;
tests and embedders build their own with make_session_factory() and pass it in.
"""
import logging
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

_session_factory = None


class Base(DeclarativeBase):
    pass


def create_engine_for(database_url: str, **engine_kwargs) -> AsyncEngine:
    return create_async_engine(database_url, echo=False, **engine_kwargs)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Rows outlive their commit: workers log and return them after committing
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        from revive.config import get_settings
        settings = get_settings()
        engine = create_engine_for(
            settings.database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
        )
        _session_factory = make_session_factory(engine)
    return _session_factory


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request, committed when the handler returns."""
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.debug("Request session rolled back: %s", str(e))
            await session.rollback()
            raise
