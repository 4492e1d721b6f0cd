"""Database configuration and session management for the shortlink service.

This module provides the SQLAlchemy async engine, the session factory handed to
the store, and database lifecycle operations using PostgreSQL as the backend.

Flow Diagram — Database Operations
=================================
::
    ┌──────────────┐
    │ ServiceManager│
    │ initialize() │
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ LinkStore(   │
    │ async_session│
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ One session  │
    │ per store op │
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ Auto-close   │
    │ (async with) │
    └──────────────┘

How to Use
===========
**Step 1 — Initialize on startup**::
    await init_db()  # Creates tables

**Step 2 — Hand the factory to the store**::
    store = LinkStore(async_session)

**Step 3 — Cleanup on shutdown**::
    await close_db()

Key Behaviours
===============
- The store opens a session per operation, so background visit recording
  never shares a session with the request that triggered it.
- Connection pooling is configured for production workloads.
- Engine is properly disposed on application shutdown.

Classes:
    Base:  SQLAlchemy declarative base for all models.

Functions:
    init_db():  Creates all tables on startup.
    close_db():  Disposes the engine on shutdown.
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from shortlink.config import get_settings

__all__ = ["Base", "async_session", "build_engine", "close_db", "engine", "init_db"]

settings = get_settings()


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=echo)
    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=20,
        max_overflow=10,
        pool_pre_ping=True,
    )


engine = build_engine(settings.DATABASE_URL, echo=(settings.APP_ENV == "development"))

async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    pass


async def init_db(target: AsyncEngine | None = None) -> None:
    async with (target or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()
