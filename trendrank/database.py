"""
Async SQLAlchemy engine + session factory.

Production runs on TiDB (MySQL-protocol) through the aiomysql driver;
PostgreSQL (asyncpg) and SQLite (aiosqlite, used by the tests) work through
the same code because ranking math runs in Python rather than in SQL.
The engine is created once at startup and reused across all requests.
"""
import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from trendrank.config import settings

logger = logging.getLogger(__name__)


def build_engine(url: str) -> AsyncEngine:
    if url.startswith("sqlite"):
        # In-memory SQLite must share one connection or every session sees
        # an empty database.
        return create_async_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            echo=False,
        )
    return create_async_engine(
        url,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        echo=False,
    )


def build_sessionmaker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
    )


engine = build_engine(settings.db_url)

AsyncSessionLocal = build_sessionmaker(engine)


class Base(DeclarativeBase):
    pass


async def init_db(bind: AsyncEngine | None = None) -> None:
    """Create all tables if they don't exist (idempotent)."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")


async def get_db():
    """FastAPI dependency that yields an async DB session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# Keep IN (...) lists under SQLite's bound-parameter limit and friendly to
# TiDB's plan cache.
IN_CLAUSE_CHUNK = 500


def chunked(items, size: int = IN_CLAUSE_CHUNK):
    items = list(items)
    for i in range(0, len(items), size):
        yield items[i:i + size]
