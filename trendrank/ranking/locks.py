"""
Batch locks for the snapshot scheduler.

At most one snapshot batch may run at a time. A single API process needs
only an in-memory flag; several replicas share a database-native session
lock. The scheduler only ever sees try_acquire() / release(): a failed
acquire means "someone else is writing a generation", so the tick is
skipped rather than retried.
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from trendrank.config import Settings

logger = logging.getLogger(__name__)


class BatchLock(ABC):
    @abstractmethod
    async def try_acquire(self) -> bool:
        """Non-blocking. True when the caller now owns the lock."""

    @abstractmethod
    async def release(self) -> None:
        ...


class LocalBatchLock(BatchLock):
    """Single-process guard. Safe without a mutex on one event loop."""

    def __init__(self):
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    async def try_acquire(self) -> bool:
        if self._held:
            return False
        self._held = True
        return True

    async def release(self) -> None:
        self._held = False


def _lock_sql(dialect: str) -> tuple[str, str]:
    """(acquire, release) statements for a dialect's session-level lock."""
    if dialect == "postgresql":
        return (
            "SELECT pg_try_advisory_lock(:key)",
            "SELECT pg_advisory_unlock(:key)",
        )
    if dialect in ("mysql", "mariadb"):
        return (
            "SELECT GET_LOCK(:name, 0)",
            "SELECT RELEASE_LOCK(:name)",
        )
    raise RuntimeError(f"No advisory lock support for dialect {dialect!r}")


class AdvisoryBatchLock(BatchLock):
    """
    Database session lock (pg_try_advisory_lock on PostgreSQL, GET_LOCK on
    MySQL/TiDB). The lock belongs to the connection, so the connection is
    held until release().
    """

    def __init__(self, engine: AsyncEngine, key: int):
        self._engine = engine
        self._key = key
        self._conn: Optional[AsyncConnection] = None
        self._local = LocalBatchLock()

    @property
    def _params(self) -> dict:
        return {"key": self._key, "name": f"trendrank:{self._key}"}

    async def try_acquire(self) -> bool:
        acquire_sql, _ = _lock_sql(self._engine.dialect.name)
        if not await self._local.try_acquire():
            return False

        conn = None
        try:
            conn = await self._engine.connect()
            acquired = (await conn.execute(text(acquire_sql), self._params)).scalar()
        except Exception:
            if conn is not None:
                await conn.close()
            await self._local.release()
            raise

        if not acquired:
            await conn.close()
            await self._local.release()
            return False

        self._conn = conn
        return True

    async def release(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None:
            _, release_sql = _lock_sql(self._engine.dialect.name)
            try:
                await conn.execute(text(release_sql), self._params)
            except Exception as exc:
                # A pooled connection would keep the session lock; discard it
                # so the server drops the lock with the session.
                logger.warning("Advisory unlock failed, discarding connection: %s", exc)
                await conn.invalidate()
            finally:
                await conn.close()
        await self._local.release()


def build_batch_lock(cfg: Settings, engine: AsyncEngine) -> BatchLock:
    if cfg.batch_lock == "advisory":
        _lock_sql(engine.dialect.name)  # fail fast on unsupported dialects
        return AdvisoryBatchLock(engine, cfg.batch_lock_key)
    return LocalBatchLock()
