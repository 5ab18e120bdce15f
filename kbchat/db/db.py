"""Database connection management using SQLModel with asyncpg or aiosqlite."""

import ssl
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional
from urllib.parse import urlparse, urlunparse

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from kbchat.config.settings import settings
from kbchat.config.logger import app_logger

_engine: Optional[AsyncEngine] = None
_session_maker: Optional[async_sessionmaker] = None


def get_db_url(db_url: Optional[str] = None) -> str:
    """Get database URL for SQLAlchemy with an async driver."""
    db_url = db_url or settings.effective_database_url
    if not db_url:
        raise ValueError("DATABASE_URL not configured")
    if db_url.startswith("sqlite"):
        if db_url.startswith("sqlite://") and "+aiosqlite" not in db_url:
            db_url = db_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return db_url

    # For Postgres URLs, strip sslmode (asyncpg handles SSL via connect_args)
    parsed = urlparse(db_url)
    query_parts = [p for p in parsed.query.split("&") if not p.startswith("sslmode=") and p]
    clean_url = urlunparse(
        (
            parsed.scheme,
            parsed.netloc,
            parsed.path,
            parsed.params,
            "&".join(query_parts),
            parsed.fragment,
        )
    )

    if clean_url.startswith("postgresql://"):
        clean_url = clean_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif clean_url.startswith("postgres://"):
        clean_url = clean_url.replace("postgres://", "postgresql+asyncpg://", 1)

    return clean_url


def _engine_kwargs(db_url: str) -> dict:
    if db_url.startswith("postgresql+asyncpg://"):
        # SSL context for managed Postgres (no certificate verification)
        ssl_context = ssl.create_default_context()
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE
        return {"pool_size": 20, "max_overflow": 0, "connect_args": {"ssl": ssl_context}}
    if ":memory:" in db_url:
        # One shared connection, otherwise every session sees an empty database
        return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    return {}


async def init_db(db_url: Optional[str] = None) -> None:
    """Initialize the database engine and create tables."""
    global _engine, _session_maker

    if _engine is not None:
        return

    url = get_db_url(db_url)
    app_logger.info(f"Initializing database connection ({url.split('://', 1)[0]})")

    _engine = create_async_engine(url, echo=False, **_engine_kwargs(url))
    _session_maker = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    # Import all models to register them with SQLModel
    from kbchat import models  # noqa: F401

    async with _engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    app_logger.info("Database initialized successfully")


async def close_db() -> None:
    """Close the database engine."""
    global _engine, _session_maker

    if _engine:
        await _engine.dispose()
        _engine = None
        _session_maker = None
        app_logger.info("Database connection closed")


@asynccontextmanager
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Async context manager yielding a session; initializes the engine lazily."""
    if not _session_maker:
        await init_db()

    async with _session_maker() as session:
        yield session


async def ping_database() -> tuple[bool, str]:
    """Run a lightweight health query against the database."""
    if not _engine or not _session_maker:
        return False, "Database not initialized"

    try:
        async with _session_maker() as session:
            result = await session.execute(text("SELECT 1"))
            row = result.scalar()
            if row == 1:
                return True, "Database connection healthy"
            return False, f"Unexpected response: {row}"
    except Exception as e:
        return False, f"Database query failed: {str(e)}"
