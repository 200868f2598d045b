"""Tests for the snapshot scheduler: batch writes, retention, locking, triggers."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, insert, select

from trendrank.config import Settings
from trendrank.models import (
    HashtagTrendingScoreSnapshot,
    Post,
    PostPopularScoreSnapshot,
    utcnow,
)
from trendrank.ranking.engagement import record_boost
from trendrank.ranking.locks import LocalBatchLock
from trendrank.ranking.snapshots import SnapshotScheduler, generation_exists, latest_as_of


@pytest.fixture
def lock():
    return LocalBatchLock()


@pytest.fixture
def scheduler(session_factory, lock):
    return SnapshotScheduler(session_factory, lock)


async def _generation(db, as_of):
    snap = PostPopularScoreSnapshot
    rows = await db.execute(
        select(snap.post_id, snap.score)
        .where(snap.as_of == as_of)
        .order_by(snap.score.desc(), snap.created_at.desc(), snap.post_id.desc())
    )
    return rows.all()


async def _seed_old_generation(db, as_of, post_id="old-post"):
    await db.execute(
        insert(PostPopularScoreSnapshot),
        [{"as_of": as_of, "post_id": post_id, "created_at": as_of, "score": 1.0,
          "user_id": "u", "visibility": "public"}],
    )
    await db.execute(
        insert(HashtagTrendingScoreSnapshot),
        [{"as_of": as_of, "visibility": "public", "tag": "old", "score": 1.0, "usage_count": 1}],
    )


# ---------------------------------------------------------------------------
# run_batch
# ---------------------------------------------------------------------------

class TestRunBatch:
    @pytest.mark.asyncio
    async def test_writes_ordered_positive_generation(self, db, scheduler, now, make_user, make_post):
        author = await make_user()
        high = await make_post(author, bookmark_count=6, hashtags=["ranking"])
        low = await make_post(author, bookmark_count=1)
        await make_post(author)                                  # scores 0
        await make_post(author, bookmark_count=9, visibility="onlyMe")
        await db.commit()

        assert await scheduler.run_batch() is True

        as_of = await latest_as_of(db)
        rows = await _generation(db, as_of)
        assert [r.post_id for r in rows] == [high.post_id, low.post_id]
        assert all(r.score > 0 for r in rows)

        tags = await db.execute(
            select(HashtagTrendingScoreSnapshot.tag).where(HashtagTrendingScoreSnapshot.as_of == as_of)
        )
        assert [t[0] for t in tags.all()] == ["ranking"]

    @pytest.mark.asyncio
    async def test_nothing_to_rank_writes_nothing(self, db, scheduler):
        assert await scheduler.run_batch() is False
        assert await latest_as_of(db) is None

    @pytest.mark.asyncio
    async def test_row_cap(self, db, session_factory, lock, make_user, make_post):
        author = await make_user()
        for n in range(1, 6):
            await make_post(author, bookmark_count=n)
        await db.commit()

        capped = SnapshotScheduler(session_factory, lock, cfg=Settings(snapshot_rows_take=2))
        assert await capped.run_batch() is True
        rows = await _generation(db, await latest_as_of(db))
        assert len(rows) == 2

    @pytest.mark.asyncio
    async def test_retention_drops_only_expired_generations(self, db, scheduler, make_user, make_post):
        start = utcnow()
        expired = start - timedelta(hours=2)
        recent = start - timedelta(minutes=10)
        await _seed_old_generation(db, expired)
        await _seed_old_generation(db, recent)
        await make_post(await make_user(), bookmark_count=2)
        await db.commit()

        assert await scheduler.run_batch() is True

        assert not await generation_exists(db, expired)
        assert await generation_exists(db, recent)
        tag_generations = await db.execute(select(func.distinct(HashtagTrendingScoreSnapshot.as_of)))
        assert [r[0] for r in tag_generations.all()] == [recent]

    @pytest.mark.asyncio
    async def test_warms_stale_boost_scores(self, db, scheduler, make_user, make_post):
        post = await make_post(await make_user())
        actor = await make_user(premium=True)
        await record_boost(db, post.post_id, actor.user_id)
        await db.commit()

        assert await scheduler.run_batch() is True

        cached = (await db.execute(
            select(Post.boost_score, Post.boost_score_updated_at).where(Post.post_id == post.post_id)
        )).one()
        assert cached.boost_score == pytest.approx(3.0, rel=1e-3)
        assert cached.boost_score_updated_at is not None

    @pytest.mark.asyncio
    async def test_skips_when_lock_held(self, db, scheduler, lock, make_user, make_post):
        await make_post(await make_user(), bookmark_count=2)
        await db.commit()
        await lock.try_acquire()

        assert await scheduler.run_batch() is False
        assert await latest_as_of(db) is None
        assert lock.held is True

    @pytest.mark.asyncio
    async def test_failure_keeps_previous_generation(self, db, scheduler, lock, make_user, make_post, monkeypatch):
        previous = utcnow() - timedelta(minutes=10)
        await _seed_old_generation(db, previous)
        await make_post(await make_user(), bookmark_count=2)
        await db.commit()

        async def boom(*args, **kwargs):
            raise RuntimeError("database went away")

        monkeypatch.setattr(scheduler._selector, "select_with_fallback", boom)

        assert await scheduler.run_batch() is False
        assert await latest_as_of(db) == previous
        assert lock.held is False


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------

class TestTrigger:
    @pytest.mark.asyncio
    async def test_concurrent_triggers_share_one_batch(self, db, scheduler, make_user, make_post):
        await make_post(await make_user(), bookmark_count=2)
        await db.commit()

        first, second = await asyncio.gather(scheduler.trigger(), scheduler.trigger())

        assert {first.started, second.started} == {True, False}
        assert first.completed and second.completed
        assert first.written is True and second.written is True
        count = await db.execute(select(func.count(func.distinct(PostPopularScoreSnapshot.as_of))))
        assert count.scalar_one() == 1

    @pytest.mark.asyncio
    async def test_zero_wait_returns_immediately(self, db, scheduler, make_user, make_post):
        await make_post(await make_user(), bookmark_count=2)
        await db.commit()

        result = await scheduler.trigger(max_wait_seconds=0)
        assert result.started is True
        assert result.completed is False

        joined = await scheduler.trigger(max_wait_seconds=10)
        assert joined.started is False
        assert joined.completed is True
        assert scheduler.running is False


class TestBootCheck:
    @pytest.mark.asyncio
    async def test_missing_generation_needs_run(self, scheduler):
        assert await scheduler.needs_boot_run() is True

    @pytest.mark.asyncio
    async def test_fresh_generation_skips_run(self, db, scheduler):
        await _seed_old_generation(db, utcnow() - timedelta(minutes=5))
        await db.commit()
        assert await scheduler.needs_boot_run() is False

    @pytest.mark.asyncio
    async def test_generation_older_than_factor_needs_run(self, db, scheduler):
        await _seed_old_generation(db, utcnow() - timedelta(minutes=13))
        await db.commit()
        assert await scheduler.needs_boot_run() is True

    @pytest.mark.asyncio
    async def test_start_and_stop(self, session_factory, lock):
        cfg = Settings(snapshot_boot_delay_seconds=3600)
        scheduler = SnapshotScheduler(session_factory, lock, cfg=cfg)
        scheduler.start()
        await asyncio.sleep(0)
        await scheduler.stop()
        assert scheduler.running is False


# ---------------------------------------------------------------------------
# Failure isolation
# ---------------------------------------------------------------------------

class FlakyLock(LocalBatchLock):
    """A lock whose backing store is down."""

    def __init__(self):
        super().__init__()
        self.attempts = 0

    async def try_acquire(self) -> bool:
        self.attempts += 1
        raise OSError("database unreachable")


class TestLockFailures:
    @pytest.mark.asyncio
    async def test_unreachable_lock_skips_tick(self, db, session_factory, make_user, make_post):
        await make_post(await make_user(), bookmark_count=2)
        await db.commit()
        flaky = FlakyLock()
        scheduler = SnapshotScheduler(session_factory, flaky)

        assert await scheduler.run_batch() is False
        assert flaky.attempts == 1
        assert await latest_as_of(db) is None

    @pytest.mark.asyncio
    async def test_loop_survives_unreachable_lock(self, session_factory):
        flaky = FlakyLock()
        cfg = Settings(snapshot_boot_delay_seconds=0, snapshot_interval_seconds=0)
        scheduler = SnapshotScheduler(session_factory, flaky, cfg=cfg)

        scheduler.start()
        await asyncio.sleep(0.05)
        try:
            assert flaky.attempts > 1
            assert not scheduler._loop_task.done()
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_loop_survives_failing_tick(self, session_factory, lock, monkeypatch):
        calls = 0

        async def boom():
            nonlocal calls
            calls += 1
            raise RuntimeError("tick failed")

        cfg = Settings(snapshot_boot_delay_seconds=0, snapshot_interval_seconds=0)
        scheduler = SnapshotScheduler(session_factory, lock, cfg=cfg)
        monkeypatch.setattr(scheduler, "run_batch", boom)

        scheduler.start()
        await asyncio.sleep(0.05)
        try:
            assert calls > 1
            assert not scheduler._loop_task.done()
        finally:
            await scheduler.stop()


# ---------------------------------------------------------------------------
# Re-running a generation
# ---------------------------------------------------------------------------

class TestSameAsOfRerun:
    @pytest.mark.asyncio
    async def test_rerun_replaces_rows(self, db, scheduler, now, make_user, make_post, monkeypatch):
        post = await make_post(await make_user(), bookmark_count=2, hashtags=["rerun"])
        await db.commit()
        monkeypatch.setattr("trendrank.ranking.snapshots.utcnow", lambda: now)

        assert await scheduler.run_batch() is True
        first = await _generation(db, now)

        post.bookmark_count = 8
        await db.commit()
        assert await scheduler.run_batch() is True
        second = await _generation(db, now)

        generations = await db.execute(select(func.count(func.distinct(PostPopularScoreSnapshot.as_of))))
        assert generations.scalar_one() == 1
        assert [r.post_id for r in second] == [post.post_id]
        assert second[0].score > first[0].score

        tag_rows = await db.execute(
            select(func.count()).select_from(HashtagTrendingScoreSnapshot)
        )
        assert tag_rows.scalar_one() == 1
