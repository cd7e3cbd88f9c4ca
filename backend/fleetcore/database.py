"""
Database connection and session management.
"""

from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import JSON
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from fleetcore.config import get_settings
from fleetcore.exceptions import TransientStorageError

settings = get_settings()

# Convert standard PostgreSQL URL to async version
database_url = settings.database_url
if database_url.startswith("postgresql://"):
    database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

# Create async engine
engine = create_async_engine(
    database_url,
    echo=settings.debug,  # Log SQL queries in debug mode
    pool_pre_ping=True,  # Verify connections before using
)

# Session factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

# Base class for models
Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency that provides a database session.
    Automatically handles commit/rollback and closing.
    """
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Dependency that provides the session factory itself.

    Used by operations that fan out over several independent
    transactions (the offline sync reconciler).
    """
    return async_session_maker


def insert_ignore(session: AsyncSession, model, values: dict):
    """
    Build an INSERT ... ON CONFLICT DO NOTHING for the session's dialect.

    The statement's rowcount is 1 when the row was written and 0 when it
    collided with an existing unique key.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model).values(**values).on_conflict_do_nothing()
    if dialect == "sqlite":
        return sqlite.insert(model).values(**values).on_conflict_do_nothing()
    raise NotImplementedError(f"insert_ignore is not supported on {dialect}")


async def init_db() -> None:
    """Initialize database tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def storage_errors(session: AsyncSession) -> AsyncIterator[None]:
    """
    Translate connection-level database failures into TransientStorageError.

    Integrity errors are not translated; callers treat those as lost races
    or duplicates.
    """
    try:
        yield
    except (OperationalError, InterfaceError) as exc:
        await session.rollback()
        raise TransientStorageError(f"Storage unavailable: {exc.orig or exc}") from exc
