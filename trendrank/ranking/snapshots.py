"""
Popular-score snapshot scheduler.

Every interval (10 minutes by default) one batch writes a new ranking
generation keyed by as_of:

  1. as_of = now
  2. warm the boost-score cache for the most boosted stale candidates
  3. compute hashtag trends for this as_of
  4. select candidates over the wide scope, score them, keep score > 0,
     order by (score, created_at, post_id) DESC, cap the row count
  5. in ONE transaction: drop generations older than the retention window,
     drop any rows already written for this exact as_of (crash re-run),
     insert the new rows in chunks

A failed batch rolls back, so readers keep the previous generation. Shortly
after boot the scheduler checks whether the latest generation is older than
1.2 × the interval and runs immediately if so.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from opentelemetry import trace
from sqlalchemy import delete, func, insert, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from trendrank.config import Settings, settings
from trendrank.database import AsyncSessionLocal, chunked, engine
from trendrank.models import (
    RANKABLE_VISIBILITIES,
    HashtagTrendingScoreSnapshot,
    Post,
    PostPopularScoreSnapshot,
    utcnow,
)
from trendrank.ranking.candidates import (
    CandidateScope,
    CandidateSelector,
    scope_filters,
)
from trendrank.ranking.hashtags import TagScores, compute_trends
from trendrank.ranking.locks import BatchLock, build_batch_lock
from trendrank.ranking.score_cache import ensure_fresh, stale_boosted_post_ids
from trendrank.ranking.signals import score_candidates
from trendrank.telemetry import SNAPSHOT_DURATION, SNAPSHOT_ROWS, SNAPSHOT_RUNS_TOTAL

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(frozen=True)
class BatchTrigger:
    started: bool       # False when the call joined a batch already in flight
    completed: bool     # False when max_wait elapsed first
    written: Optional[bool] = None


async def latest_as_of(db: AsyncSession) -> Optional[datetime]:
    return (
        await db.execute(select(func.max(PostPopularScoreSnapshot.as_of)))
    ).scalar_one_or_none()


async def generation_exists(db: AsyncSession, as_of: datetime) -> bool:
    row = await db.execute(
        select(PostPopularScoreSnapshot.post_id)
        .where(PostPopularScoreSnapshot.as_of == as_of)
        .limit(1)
    )
    return row.first() is not None


class SnapshotScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lock: BatchLock,
        selector: Optional[CandidateSelector] = None,
        cfg: Settings = settings,
    ):
        self._session_factory = session_factory
        self._lock = lock
        self._selector = selector or CandidateSelector.from_settings(cfg)
        self._cfg = cfg
        self._loop_task: Optional[asyncio.Task] = None
        self._batch_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._batch_task is not None and not self._batch_task.done()

    # ── Batch ───────────────────────────────────────────────────────────────

    async def run_batch(self) -> bool:
        """Write one generation. Returns True if rows were written."""
        try:
            acquired = await self._lock.try_acquire()
        except Exception:
            logger.warning("Could not take the snapshot batch lock; tick skipped", exc_info=True)
            SNAPSHOT_RUNS_TOTAL.labels(outcome="failed").inc()
            return False
        if not acquired:
            logger.debug("Snapshot batch already running, skipping tick")
            SNAPSHOT_RUNS_TOTAL.labels(outcome="skipped").inc()
            return False

        t0 = time.perf_counter()
        try:
            with tracer.start_as_current_span("snapshot_batch") as span:
                async with self._session_factory() as db:
                    as_of = utcnow()
                    written = await self._write_generation(db, as_of)
                span.set_attribute("snapshot.rows", written)
        except Exception:
            logger.warning("Snapshot batch failed; previous generation kept", exc_info=True)
            SNAPSHOT_RUNS_TOTAL.labels(outcome="failed").inc()
            return False
        finally:
            try:
                await self._lock.release()
            except Exception:
                logger.warning("Snapshot batch lock release failed", exc_info=True)

        elapsed = time.perf_counter() - t0
        SNAPSHOT_RUNS_TOTAL.labels(outcome="written" if written else "empty").inc()
        SNAPSHOT_ROWS.set(written)
        SNAPSHOT_DURATION.observe(elapsed)
        logger.info(
            "Snapshot generation %s written: %d rows in %.2fs",
            as_of.isoformat(), written, elapsed,
        )
        return written > 0

    async def _write_generation(self, db: AsyncSession, as_of: datetime) -> int:
        cfg = self._cfg
        scope = CandidateScope.build(RANKABLE_VISIBILITIES)

        with tracer.start_as_current_span("snapshot_warm_cache"):
            window = [
                *scope_filters(scope),
                Post.parent_id.is_(None),
                Post.created_at >= as_of - timedelta(days=cfg.popular_lookback_days),
            ]
            warm_ids = await stale_boosted_post_ids(db, window, as_of, cfg.popular_warmup_take, cfg)
            await ensure_fresh(db, warm_ids, as_of, cfg)
            # Warmed scores are useful even if the generation write fails.
            await db.commit()

        with tracer.start_as_current_span("snapshot_score"):
            trends = await compute_trends(db, as_of, cfg)
            tag_scores = TagScores.from_trends(trends, as_of)
            ids, _ = await self._selector.select_with_fallback(db, scope, as_of)
            scored = await score_candidates(db, ids, as_of, scope.visibilities, tag_scores, cfg)

        scored = [(p, s) for p, s in scored if s > 0]
        scored.sort(key=lambda ps: (ps[1], ps[0].created_at, ps[0].post_id), reverse=True)
        scored = scored[: cfg.snapshot_rows_take]

        rows = [
            {
                "as_of": as_of,
                "post_id": p.post_id,
                "created_at": p.created_at,
                "score": s,
                "user_id": p.user_id,
                "visibility": p.visibility,
                "parent_id": p.parent_id,
                "root_id": p.root_id,
            }
            for p, s in scored
        ]
        tag_rows = [
            {
                "as_of": as_of,
                "visibility": t.visibility,
                "tag": t.tag,
                "score": t.score,
                "usage_count": t.usage_count,
            }
            for t in trends
        ]

        with tracer.start_as_current_span("snapshot_write"):
            cutoff = as_of - timedelta(seconds=cfg.snapshot_retention_seconds)
            for model in (PostPopularScoreSnapshot, HashtagTrendingScoreSnapshot):
                await db.execute(delete(model).where(model.as_of < cutoff))
                await db.execute(delete(model).where(model.as_of == as_of))
            for chunk in chunked(rows, cfg.snapshot_insert_chunk_size):
                await db.execute(insert(PostPopularScoreSnapshot), chunk)
            for chunk in chunked(tag_rows, cfg.snapshot_insert_chunk_size):
                await db.execute(insert(HashtagTrendingScoreSnapshot), chunk)
            await db.commit()

        return len(rows)

    # ── Scheduling ──────────────────────────────────────────────────────────

    def _spawn(self) -> tuple[asyncio.Task, bool]:
        """Return the in-flight batch task, or start one."""
        if self.running:
            return self._batch_task, False
        self._batch_task = asyncio.create_task(self.run_batch())
        return self._batch_task, True

    async def trigger(self, max_wait_seconds: Optional[float] = None) -> BatchTrigger:
        """Run one batch now, or join the one already running."""
        task, started = self._spawn()
        if max_wait_seconds is not None and max_wait_seconds <= 0:
            return BatchTrigger(started=started, completed=False)
        try:
            written = await asyncio.wait_for(asyncio.shield(task), timeout=max_wait_seconds)
        except asyncio.TimeoutError:
            return BatchTrigger(started=started, completed=False)
        return BatchTrigger(started=started, completed=True, written=written)

    async def needs_boot_run(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        async with self._session_factory() as db:
            latest = await latest_as_of(db)
        if latest is None:
            return True
        max_age = self._cfg.snapshot_interval_seconds * self._cfg.snapshot_boot_stale_factor
        return latest < now - timedelta(seconds=max_age)

    async def _run_forever(self) -> None:
        await asyncio.sleep(self._cfg.snapshot_boot_delay_seconds)
        try:
            if await self.needs_boot_run():
                logger.info("Latest snapshot missing or stale at boot, running now")
                await asyncio.shield(self._spawn()[0])
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Boot snapshot check failed: %s", exc)

        while True:
            await asyncio.sleep(self._cfg.snapshot_interval_seconds)
            try:
                await asyncio.shield(self._spawn()[0])
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("Snapshot tick failed; next tick in %ds",
                               self._cfg.snapshot_interval_seconds, exc_info=True)

    def start(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._run_forever())
            logger.info(
                "Snapshot scheduler started (interval=%ds)", self._cfg.snapshot_interval_seconds
            )

    async def stop(self) -> None:
        for task in (self._loop_task, self._batch_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._loop_task = None
        self._batch_task = None
        logger.info("Snapshot scheduler stopped")


def build_scheduler(
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    bind: AsyncEngine = engine,
    cfg: Settings = settings,
) -> SnapshotScheduler:
    return SnapshotScheduler(session_factory, build_batch_lock(cfg, bind), cfg=cfg)
