# ==== DATABASE CONNECTION AND SESSION MANAGEMENT ==== #

"""
Database connection and session management for the invoice anomaly engine.

This module provides async SQLAlchemy connectivity with a lazily created
engine, a session factory, and the FastAPI session dependency used by the
invoice repository and the audit logger.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
    AsyncEngine
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from anomaly_engine.settings import settings


# ==== SQLALCHEMY CONFIGURATION ==== #

Base = declarative_base()

# Set by init_database, cleared by close_database
engine: AsyncEngine | None = None
SessionLocal: async_sessionmaker[AsyncSession] | None = None


# ==== DATABASE INITIALIZATION ==== #

def _normalize_database_url(db_url: str) -> str:
    """Force the asyncpg driver and its SSL parameter spelling."""
    if db_url.startswith("postgresql") and not db_url.startswith("postgresql+asyncpg://"):
        db_url = db_url.replace("postgresql+psycopg://", "postgresql+asyncpg://")
        db_url = db_url.replace("postgresql://", "postgresql+asyncpg://")

    if "sslmode=require" in db_url:
        db_url = db_url.replace("sslmode=require", "ssl=require")

    return db_url


def init_database() -> None:
    """Create the engine and session factory once; no connection is opened here."""
    global engine, SessionLocal

    if engine is not None:
        return

    db_url = _normalize_database_url(settings.DATABASE_URL)

    # PgBouncer poolers do their own pooling
    is_pooler = "pooler" in db_url

    engine = create_async_engine(
        db_url,
        echo=settings.APP_ENV == "dev",
        poolclass=NullPool if is_pooler else None,
        pool_pre_ping=not is_pooler,
    )

    SessionLocal = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a session that commits on success and rolls back on error."""
    if SessionLocal is None:
        init_database()

    async with SessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session for the invoice repository and audit logger."""
    async with get_session() as session:
        yield session


async def close_database() -> None:
    """Dispose of the engine so a later init_database starts fresh."""
    global engine, SessionLocal
    if engine is not None:
        await engine.dispose()
        engine = None
        SessionLocal = None
