"""Database engine and session management.

Engines are created per owner (the API process in its lifespan, a worker for
the duration of a single run) and disposed by that owner.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Request
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine for the given URL."""
    return create_async_engine(database_url, echo=echo, pool_pre_ping=True)


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory bound to an engine."""
    return async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def database_session_maker(
    database_url: str,
) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Open an engine for the duration of the block and dispose it afterwards.

    Args:
        database_url: SQLAlchemy async database URL

    Yields:
        Session factory bound to the scoped engine
    """
    engine = create_engine(database_url)
    try:
        yield create_session_maker(engine)
    finally:
        await engine.dispose()


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """FastAPI dependency yielding a session from the application's factory."""
    session_maker: async_sessionmaker[AsyncSession] = request.app.state.session_maker
    async with session_maker() as session:
        yield session
