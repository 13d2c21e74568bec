"""Database configuration and session management.

This module constructs an asynchronous SQLAlchemy engine and session
factory for the remote relational store that holds accounts, teams and
claims.  ``DATABASE_URL`` selects the store; Postgres URLs are normalised
to the psycopg (v3) async driver and SQLite URLs to aiosqlite.  When no
URL is configured a local SQLite database is used only if
``DB_DEV_FALLBACK_SQLITE`` is enabled.
"""

from __future__ import annotations

import logging
from typing import AsyncGenerator, Dict, Any, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from receiptflow.core.config import settings, database_url_from_env

logger = logging.getLogger(__name__)

LAST_DB_INIT_ERROR: Optional[str] = None


def normalise_database_url(db_url: Optional[str]) -> str:
    """Return an async-driver URL for ``db_url``.

    Raises RuntimeError when no URL is given and the SQLite fallback is off.
    """
    if not db_url:
        if not settings.DB_DEV_FALLBACK_SQLITE:
            raise RuntimeError(
                "No database URL provided via DATABASE_URL; with "
                "DB_DEV_FALLBACK_SQLITE=false a Postgres URL is required."
            )
        return "sqlite+aiosqlite:///./receiptflow.db"

    url_obj = make_url(db_url)
    driver = url_obj.drivername or ""
    if driver == "sqlite":
        url_obj = url_obj.set(drivername="sqlite+aiosqlite")
    elif driver in {"postgresql", "postgres", "postgresql+psycopg2", "postgresql+asyncpg"}:
        q = dict(url_obj.query or {})
        # Always require SSL unless explicitly configured
        if not q.get("sslmode"):
            q["sslmode"] = "require"
        url_obj = url_obj.set(drivername="postgresql+psycopg", query=q)
    return url_obj.render_as_string(hide_password=False)


def build_engine(db_url: str) -> AsyncEngine:
    engine_kwargs: dict[str, Any] = dict(echo=False, pool_pre_ping=True)
    url_obj = make_url(db_url)
    if url_obj.get_backend_name() == "sqlite" and url_obj.database in (None, "", ":memory:"):
        # A single shared connection keeps the in-memory database alive
        engine_kwargs["poolclass"] = StaticPool
        engine_kwargs["connect_args"] = {"check_same_thread": False}
    return create_async_engine(db_url, **engine_kwargs)


db_url = normalise_database_url(database_url_from_env())
engine = build_engine(db_url)

# Create session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

# Declarative base
Base = declarative_base()


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


async def init_db(bind: AsyncEngine | None = None) -> None:
    """Create all database tables declared on ``Base``.

    Typically called during application startup and from test fixtures.
    """
    global LAST_DB_INIT_ERROR
    target = bind or engine
    try:
        async with target.begin() as conn:
            # Import all models to ensure metadata is populated
            from receiptflow.models import tables  # noqa: F401
            await conn.run_sync(Base.metadata.create_all)
    except Exception as e:
        LAST_DB_INIT_ERROR = str(e)
        logger.exception("Database initialisation failed: %s", e)
        raise


def get_db_debug_info() -> Dict[str, Any]:
    """Return non-sensitive information about the current DB engine for debugging."""
    info: Dict[str, Any] = {"environment": (settings.ENVIRONMENT or "development")}
    if LAST_DB_INIT_ERROR:
        info["last_db_init_error"] = LAST_DB_INIT_ERROR
    try:
        url_obj = make_url(str(engine.url))
        info.update(
            {
                "drivername": url_obj.drivername,
                "host": url_obj.host,
                "database": url_obj.database,
                "url": url_obj.render_as_string(hide_password=True),
            }
        )
    except Exception as ex:
        info.update({"error": f"unable to parse engine url: {ex}"})
    return info
