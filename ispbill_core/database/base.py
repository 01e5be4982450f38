"""
Database Base Module

Declarative base, timestamp mixin and the async engine/session manager used
by the SQL ledger store and the outbox.
"""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy import DateTime, String, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..billing.base import utcnow


ASYNC_DRIVERS = {
    "postgresql://": "postgresql+asyncpg://",
    "sqlite://": "sqlite+aiosqlite://",
}


def async_database_url(database_url: str) -> str:
    """Swap a plain driver URL for its async driver."""
    for prefix, async_prefix in ASYNC_DRIVERS.items():
        if database_url.startswith(prefix):
            return async_prefix + database_url[len(prefix):]
    return database_url


class Base(DeclarativeBase):
    """Ledger tables share a string UUID primary key."""

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )


class TimestampMixin:
    """created_at / updated_at columns, naive UTC."""

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )


class DatabaseManager:
    """
    Engine and session lifecycle for the ledger database.

    Every `session()` block is one transaction: committed on exit, rolled
    back when the block raises. Charge and payment writes rely on this to
    keep the debit, the charge record and the status change together.
    """

    def __init__(
        self,
        database_url: str,
        pool_size: int = 5,
        max_overflow: int = 10,
        pool_timeout: int = 30,
        pool_recycle: int = 1800,
        sqlite_busy_timeout: float = 15.0,
        echo: bool = False,
    ):
        """
        Initialize database manager.

        Args:
            database_url: Database connection URL
            pool_size: Size of connection pool (server databases only)
            max_overflow: Max connections beyond pool size
            pool_timeout: Timeout for acquiring connection
            pool_recycle: Recycle connections after this many seconds
            sqlite_busy_timeout: Seconds a SQLite writer waits for the file lock
            echo: Echo SQL statements
        """
        self._database_url = async_database_url(database_url)
        self._pool_options = {
            "pool_size": pool_size,
            "max_overflow": max_overflow,
            "pool_timeout": pool_timeout,
            "pool_recycle": pool_recycle,
        }
        self._sqlite_busy_timeout = sqlite_busy_timeout
        self._echo = echo

        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None

    @property
    def is_sqlite(self) -> bool:
        return self._database_url.startswith("sqlite")

    @property
    def engine(self) -> AsyncEngine:
        """Get or create the database engine."""
        if self._engine is None:
            kwargs: Dict[str, Any] = {"echo": self._echo}
            if self.is_sqlite:
                # Concurrent writers queue on the file lock instead of failing
                kwargs["connect_args"] = {"timeout": self._sqlite_busy_timeout}
            else:
                kwargs.update(self._pool_options)
            self._engine = create_async_engine(self._database_url, **kwargs)
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker:
        if self._session_factory is None:
            self._session_factory = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )
        return self._session_factory

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Transactional session scope."""
        session = self.session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def create_all(self) -> None:
        """Create the ledger and outbox tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def health_check(self) -> bool:
        """Check database connectivity."""
        try:
            async with self.session() as session:
                await session.execute(text("SELECT 1"))
            return True
        except (SQLAlchemyError, OSError):
            return False

    async def close(self) -> None:
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None


# =============================================================================
# Global Instance Management
# =============================================================================


_database: Optional[DatabaseManager] = None


def get_database() -> DatabaseManager:
    """Get the global database manager instance."""
    if _database is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _database


def init_database(database_url: str, **kwargs) -> DatabaseManager:
    """Initialize the global database manager used by the API."""
    global _database
    _database = DatabaseManager(database_url, **kwargs)
    return _database


async def close_database() -> None:
    global _database
    if _database:
        await _database.close()
        _database = None
