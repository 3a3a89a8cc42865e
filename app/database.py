"""Database connection and session management."""

from collections.abc import AsyncGenerator
from typing import Any

from fastapi import Request
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


# SQLAlchemy 2.0 declarative base
class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


def engine_options(database_url: str, echo: bool = False) -> dict[str, Any]:
    """Build engine keyword arguments for the given connection string.

    SQLite uses a single-connection pool, so pool sizing only applies to
    server databases.
    """
    options: dict[str, Any] = {"echo": echo, "future": True}
    if not database_url.startswith("sqlite"):
        options.update(pool_pre_ping=True, pool_size=10, max_overflow=20)
    return options


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with the connection pool the app shares."""
    return create_async_engine(database_url, **engine_options(database_url, echo))


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory bound to an engine."""
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


async def get_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for FastAPI routes to get a database session.

    Sessions come from the factory the application was created with.
    Automatically commits on success and rolls back on exception.

    Usage:
        @router.get("/view")
        async def endpoint(db: AsyncSession = Depends(get_session)):
            ...
    """
    async with request.app.state.session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db(bind: AsyncEngine) -> None:
    """Initialize database (create all tables)."""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_db(bind: AsyncEngine) -> None:
    """Drop all tables."""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
