from __future__ import annotations

from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from .settings import get_settings

settings = get_settings()

SessionFactory = async_sessionmaker[AsyncSession]


class Base(DeclarativeBase):
    """Base declarative class for movie-factory models."""


def make_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, future=True, echo=False, pool_pre_ping=True)


def make_session_factory(engine: AsyncEngine) -> SessionFactory:
    """Sessions never expire on commit: the orchestrator reads rows after committing."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


engine = make_engine(settings.async_database_url)
AsyncSessionLocal = make_session_factory(engine)


async def get_session() -> AsyncIterator[AsyncSession]:
    async with AsyncSessionLocal() as session:
        yield session
