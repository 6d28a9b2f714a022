"""
Database session configuration.

This module handles database engine creation and session management
using SQLAlchemy with async support for PostgreSQL.
"""

from contextlib import contextmanager

from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from backend.app.core.config import settings
from backend.app.core.exceptions import StorageUnavailable

# Create async engine
engine = create_async_engine(
    settings.database_url,
    echo=settings.db_echo,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_pre_ping=True,
    future=True,
)

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

# Create declarative base for models
Base = declarative_base()


async def get_db():
    """
    FastAPI dependency for database sessions.

    Yields an async database session and ensures it's properly closed.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


def get_session_factory() -> async_sessionmaker:
    """
    FastAPI dependency for components that open their own sessions
    (fire-and-forget ingestion, per-section dashboard queries).
    """
    return AsyncSessionLocal


@contextmanager
def storage_errors(operation: str):
    """
    Translate connectivity failures into StorageUnavailable.

    Integrity violations are left alone; they carry domain meaning.
    """
    try:
        yield
    except IntegrityError:
        raise
    except (OperationalError, InterfaceError) as exc:
        raise StorageUnavailable(f"Storage unavailable during {operation}", {"operation": operation}) from exc
    except DBAPIError as exc:
        if exc.connection_invalidated:
            raise StorageUnavailable(f"Storage unavailable during {operation}", {"operation": operation}) from exc
        raise
    except (ConnectionError, OSError) as exc:
        raise StorageUnavailable(f"Storage unavailable during {operation}", {"operation": operation}) from exc


def dialect_name(db: AsyncSession) -> str:
    """Name of the SQL dialect bound to a session ('postgresql', 'sqlite', ...)."""
    return db.get_bind().dialect.name
