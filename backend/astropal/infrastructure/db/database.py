"""
Database Configuration for Astropal

Async SQLAlchemy engine and session management. The manager is built from
a database URL, so the application and the test suite can each own one.

PostgreSQL (asyncpg) is the production target; SQLite (aiosqlite) backs
local development and tests.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
    AsyncEngine,
)
from sqlalchemy.pool import StaticPool
from sqlalchemy import text
from sqlmodel import SQLModel

from astropal.config.settings import Settings, get_settings


def normalize_database_url(database_url: str) -> str:
    """Force the async driver for plain PostgreSQL URLs."""
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql+asyncpg://", 1)
    return database_url


class DatabaseManager:
    """
    Manages async database connections and sessions.

    The engine is created lazily on first use.
    """

    def __init__(
        self,
        database_url: str,
        echo: bool = False,
        pool_size: int = 5,
        max_overflow: int = 10,
        pool_timeout: int = 30,
    ):
        self._database_url = normalize_database_url(database_url)
        self._echo = echo
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._pool_timeout = pool_timeout
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "DatabaseManager":
        return cls(
            settings.database_url,
            echo=settings.database_echo,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout,
        )

    @property
    def is_sqlite(self) -> bool:
        return self._database_url.startswith("sqlite")

    @property
    def engine(self) -> AsyncEngine:
        """Get or create async engine with connection pooling."""
        if self._engine is None:
            self._initialize_engine()
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        """Get or create session factory."""
        if self._session_factory is None:
            self._initialize_engine()
        return self._session_factory

    def _initialize_engine(self) -> None:
        """Initialize async engine with dialect-appropriate pooling."""
        if self.is_sqlite:
            engine_kwargs = {"connect_args": {"check_same_thread": False}}
            if ":memory:" in self._database_url:
                # One shared connection, otherwise each session sees an empty DB
                engine_kwargs["poolclass"] = StaticPool
        else:
            engine_kwargs = {
                "pool_size": self._pool_size,
                "max_overflow": self._max_overflow,
                "pool_timeout": self._pool_timeout,
                "pool_pre_ping": True,
            }

        self._engine = create_async_engine(
            self._database_url,
            echo=self._echo,
            **engine_kwargs,
        )

        self._session_factory = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @asynccontextmanager
    async def session_context(self) -> AsyncGenerator[AsyncSession, None]:
        """
        One unit of work: commit on clean exit, roll back on error.

        Usage:
            async with db.session_context() as session:
                result = await session.execute(query)
        """
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def ping(self) -> None:
        async with self.session_factory() as session:
            await session.execute(text("SELECT 1"))

    async def create_tables(self) -> None:
        """Create all tables from SQLModel metadata."""
        import astropal.infrastructure.db.models  # noqa: F401  registers tables

        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def close(self) -> None:
        """Close engine and dispose of connection pool."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None


# Global instance (lazy initialization)
_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """Get or create the database manager instance."""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager.from_settings(get_settings())
    return _db_manager


async def init_db() -> None:
    """Initialize database connection pool (called on app startup)."""
    db = get_db_manager()
    if db.is_sqlite:
        # Development convenience; PostgreSQL schemas come from Alembic
        await db.create_tables()
    await db.ping()


async def close_db() -> None:
    """Close database connection pool (called on app shutdown)."""
    global _db_manager
    if _db_manager is not None:
        await _db_manager.close()
        _db_manager = None
