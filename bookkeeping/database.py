"""Database configuration and session management."""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from bookkeeping.config import settings


class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""

    pass


def build_engine(url: str | None = None, **kwargs) -> AsyncEngine:
    """Create the async engine, applying pool settings only for server databases."""
    database_url = url or settings.database_url
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=settings.debug, **kwargs)
    return create_async_engine(
        database_url,
        echo=settings.debug,
        pool_pre_ping=True,
        pool_size=10,  # Max persistent connections
        max_overflow=20,  # Additional transient connections under load
        pool_recycle=3600,  # Recycle connections after 1 hour
        **kwargs,
    )


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
