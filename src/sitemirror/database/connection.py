"""Database connection management for SQLite."""

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
)
from sqlalchemy.pool import StaticPool

from ..foundation.config import ConfigManager, get_config_manager
from ..foundation.errors import StorageError
from ..foundation.logging import get_logger

logger = get_logger(__name__)


class DatabaseManager:
    """Manages the shared SQLite database for jobs, cache, assets and queue."""

    def __init__(self, config_manager: Optional[ConfigManager] = None):
        self.config_manager = config_manager or get_config_manager()
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None
        self._initialized = False
        self._session_lock: Optional[asyncio.Lock] = None

    @property
    def database_url(self) -> str:
        """Get the database URL from configuration.

        Raises:
            StorageError: If the database directory cannot be created
        """
        db_path = self.config_manager.get_setting(
            "storage.database_path",
            "~/.sitemirror/sitemirror.db"
        )
        if db_path == ":memory:":
            return "sqlite+aiosqlite:///:memory:"

        db_path = Path(db_path).expanduser().resolve()
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(
                f"Failed to create database directory {db_path.parent}: {e}",
                path=str(db_path.parent)
            ) from e

        return f"sqlite+aiosqlite:///{db_path}"

    @property
    def engine(self) -> AsyncEngine:
        """Get or create the database engine."""
        if self._engine is None:
            synchronous = self.config_manager.get_setting("storage.sqlite_synchronous", "NORMAL")
            wal_mode = self.config_manager.get_setting("storage.sqlite_wal_mode", True)

            self._engine = create_async_engine(
                self.database_url,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False, "timeout": 30},
            )

            @event.listens_for(self._engine.sync_engine, "connect")
            def set_sqlite_pragma(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                if wal_mode:
                    cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute(f"PRAGMA synchronous={synchronous}")
                cursor.execute("PRAGMA busy_timeout=30000")
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

            logger.info(f"Created database engine: {self.database_url}")
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker:
        """Get or create the session factory."""
        if self._session_factory is None:
            self._session_factory = async_sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )
        return self._session_factory

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get a database session that commits on success and rolls back on error."""
        # StaticPool shares one connection; sessions must not interleave on it
        if self._session_lock is None:
            self._session_lock = asyncio.Lock()
        async with self._session_lock:
            session = self.session_factory()
            try:
                yield session
            except BaseException:
                await session.rollback()
                raise
            else:
                await session.commit()
            finally:
                await session.close()

    async def initialize(self) -> None:
        """Create all tables if they don't exist."""
        if self._initialized:
            return

        from .models import Base

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self._initialized = True
        logger.info(f"Database initialized with tables: {sorted(Base.metadata.tables.keys())}")

    async def close(self) -> None:
        """Close the database engine."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            self._initialized = False
            self._session_lock = None
            logger.info("Database engine closed")


# Global database manager instance
_db_manager: Optional[DatabaseManager] = None


def get_database_manager() -> DatabaseManager:
    """Get the global database manager instance."""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager


def set_database_manager(manager: Optional[DatabaseManager]) -> None:
    """Replace the global database manager (None resets it)."""
    global _db_manager
    _db_manager = manager
