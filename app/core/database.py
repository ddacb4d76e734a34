from typing import Optional

import redis.asyncio as redis
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.core.config import settings


def create_backend_engine(url: str) -> AsyncEngine:
    """
    Build an async engine with the shared pool settings.

    SQLite has no real pool, so pool sizing is only applied to server databases.
    """
    options = {"echo": settings.ECHO_SQL}
    if make_url(url).get_backend_name() != "sqlite":
        options.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=0,
            pool_timeout=settings.DB_POOL_TIMEOUT,
            pool_recycle=settings.DB_POOL_RECYCLE,
            pool_pre_ping=True,
        )
    return create_async_engine(url, **options)


engine = create_backend_engine(settings.DATABASE_URL)

# Talk to the DB through async sessions without refreshes after closed conn to avoid errors in async programming
AsyncSessionLocal = async_sessionmaker(
    bind=engine, class_=AsyncSession, expire_on_commit=False
)


# This is the "Bridge" that gives my routes access to the catalogue database
async def get_db():
    async with AsyncSessionLocal() as session:
        yield session


def create_redis_client(url: Optional[str]) -> Optional[redis.Redis]:
    # No URL means the ephemeral cache tier is disabled
    if not url:
        return None
    return redis.from_url(url, decode_responses=True)


# All the models are "stored" in the Base class will be processed by the Engine
class Base(DeclarativeBase):
    pass
