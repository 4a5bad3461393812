"""
Database Initialization

Creates the SQLite schema for QR Pay and the async SQLAlchemy engine/session
factory used by the services.
Tables: payment_qrs
"""
from pathlib import Path
import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .models import Base

logger = logging.getLogger(__name__)


def create_engine(database_path: str) -> AsyncEngine:
    """
    Create the async engine for a SQLite database file.

    Args:
        database_path: Filesystem path of the SQLite database

    Returns:
        AsyncEngine using the aiosqlite driver
    """
    db_path = Path(database_path)

    # Create database directory if it doesn't exist
    db_path.parent.mkdir(parents=True, exist_ok=True)

    return create_async_engine(
        f"sqlite+aiosqlite:///{db_path}",
        echo=False,
        connect_args={
            "timeout": 30,  # 30 second timeout for lock acquisition
            "check_same_thread": False
        },
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Session factory with expire_on_commit disabled so rows stay readable after commit."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


async def initialize_database(engine: AsyncEngine) -> None:
    """
    Create all tables and indexes, and enable WAL mode.

    Called during FastAPI startup. Safe to run repeatedly.
    """
    async with engine.connect() as conn:
        # WAL mode for better concurrency (prevents most locking issues)
        await conn.exec_driver_sql("PRAGMA journal_mode=WAL")
        await conn.exec_driver_sql("PRAGMA synchronous=NORMAL")
        await conn.run_sync(Base.metadata.create_all)
        await conn.commit()

    logger.info(f"Database initialized at {engine.url.database}")
