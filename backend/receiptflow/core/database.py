"""Database configuration and session management.

This module constructs an asynchronous SQLAlchemy engine and session
factory for the application from ``settings.DATABASE_URL``.  Plain
``sqlite`` URLs are upgraded to ``aiosqlite`` and Postgres URLs are
normalised to the ``psycopg`` (v3) async driver.

Services never import ``AsyncSessionLocal`` directly; the session
factory is injected into ``ReceiptPipeline`` so tests can hand it an
engine bound to a temporary database.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncGenerator

from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from receiptflow.core.config import settings

logger = logging.getLogger(__name__)

# Declarative base
Base = declarative_base()


def normalise_database_url(url: str) -> str:
    """Return ``url`` rewritten to an async driver SQLAlchemy understands."""
    url_obj = make_url(url)
    driver = url_obj.drivername or ""
    if driver == "sqlite":
        url_obj = url_obj.set(drivername="sqlite+aiosqlite")
    elif driver in {"postgresql", "postgres", "postgresql+psycopg2", "postgresql+asyncpg"}:
        q = dict(url_obj.query or {})
        # Always require SSL unless explicitly disabled
        if not q.get("sslmode"):
            q["sslmode"] = "require"
        url_obj = url_obj.set(drivername="postgresql+psycopg", query=q)
    return url_obj.render_as_string(hide_password=False)


def build_engine(url: str | None = None, **kwargs: Any) -> AsyncEngine:
    db_url = normalise_database_url(url or settings.DATABASE_URL)
    engine_kwargs: dict[str, Any] = dict(echo=False, pool_pre_ping=True)
    engine_kwargs.update(kwargs)
    masked = make_url(db_url).set(password=None)
    logger.info("Creating async engine with URL: %s", masked)
    return create_async_engine(db_url, **engine_kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine()
AsyncSessionLocal = build_session_factory(engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency that yields a database session.

    This function is intended for FastAPI dependency injection.  Each
    session is scoped to the request and closed after use.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(target: AsyncEngine | None = None) -> None:
    """Create all tables on ``target`` (defaults to the application engine)."""
    async with (target or engine).begin() as conn:
        # Import all models to ensure metadata is populated
        from receiptflow.models import tables  # noqa: F401

        await conn.run_sync(Base.metadata.create_all)
