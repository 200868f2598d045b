"""
Engagement score cache stored on the post row.

  posts.boost_score            — decayed, tier-weighted sum over boosts
  posts.boost_score_updated_at — when boost_score was computed

A pair older than the TTL, or a null pair, is stale. Stale ids are refreshed
in one batched aggregate and written back with one bulk update. Nothing is
ever pushed: the only way to shorten staleness below the TTL is
invalidate(), which the write path calls in the same transaction as its
counter change.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from trendrank.config import Settings, settings
from trendrank.database import chunked
from trendrank.models import VERIFIED_NONE, Boost, Post, User, utcnow
from trendrank.ranking.scoring import decay
from trendrank.telemetry import SCORE_CACHE_REFRESHED

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedScore:
    score: Optional[float]
    updated_at: Optional[datetime]


def actor_weight(premium: bool, verified_status: Optional[str], cfg: Settings = settings) -> float:
    """Ordinal weight of a boosting actor: premium > verified > everyone else."""
    if premium:
        return cfg.boost_weight_premium
    if (verified_status or VERIFIED_NONE) != VERIFIED_NONE:
        return cfg.boost_weight_verified
    return cfg.boost_weight_base


def is_stale(updated_at: Optional[datetime], now: datetime, cfg: Settings = settings) -> bool:
    if updated_at is None:
        return True
    return updated_at < now - timedelta(seconds=cfg.score_cache_ttl_seconds)


async def compute_boost_scores(
    db: AsyncSession,
    post_ids: list[str],
    now: datetime,
    cfg: Settings = settings,
) -> dict[str, float]:
    """Decayed boost score per post; posts without boosts score 0."""
    scores: dict[str, float] = defaultdict(float)
    for chunk in chunked(post_ids):
        rows = await db.execute(
            select(Boost.post_id, Boost.created_at, User.premium, User.verified_status)
            .join(User, User.user_id == Boost.user_id)
            .where(Boost.post_id.in_(chunk))
        )
        for post_id, created_at, premium, verified_status in rows.all():
            scores[post_id] += actor_weight(premium, verified_status, cfg) * decay(
                now, created_at, cfg.boost_half_life_seconds
            )
    return {pid: scores.get(pid, 0.0) for pid in post_ids}


async def ensure_fresh(
    db: AsyncSession,
    post_ids: Iterable[str],
    now: Optional[datetime] = None,
    cfg: Settings = settings,
) -> dict[str, CachedScore]:
    """
    Make sure every requested post has a cached boost score younger than the
    TTL and return the cached pairs. Unknown ids are skipped silently.
    Database errors propagate to the caller.
    """
    ids = list(dict.fromkeys(pid for pid in post_ids if pid))
    if not ids:
        return {}
    now = now or utcnow()

    current: dict[str, CachedScore] = {}
    for chunk in chunked(ids):
        rows = await db.execute(
            select(Post.post_id, Post.boost_score, Post.boost_score_updated_at)
            .where(Post.post_id.in_(chunk))
        )
        for post_id, boost_score, updated_at in rows.all():
            current[post_id] = CachedScore(boost_score, updated_at)

    stale_ids = [pid for pid, cached in current.items() if is_stale(cached.updated_at, now, cfg)]
    if stale_ids:
        scores = await compute_boost_scores(db, stale_ids, now, cfg)
        await db.execute(
            update(Post),
            [
                {"post_id": pid, "boost_score": value, "boost_score_updated_at": now}
                for pid, value in scores.items()
            ],
        )
        for pid, value in scores.items():
            current[pid] = CachedScore(value, now)
        SCORE_CACHE_REFRESHED.inc(len(stale_ids))
        logger.debug("Refreshed boost scores for %d posts", len(stale_ids))

    return current


async def invalidate(db: AsyncSession, post_id: str) -> None:
    """Null the cached pair so the next read recomputes it."""
    await db.execute(
        update(Post)
        .where(Post.post_id == post_id)
        .values(boost_score=None, boost_score_updated_at=None)
        .execution_options(synchronize_session="fetch")
    )


async def stale_boosted_post_ids(
    db: AsyncSession,
    filters: list,
    now: datetime,
    take: int,
    cfg: Settings = settings,
) -> list[str]:
    """
    The most-boosted posts (under `filters`) whose cache is stale, used to
    warm the cache before a ranking pass so the top of the feed is scored
    against fresh engagement.
    """
    stale_before = now - timedelta(seconds=cfg.score_cache_ttl_seconds)
    rows = await db.execute(
        select(Post.post_id)
        .where(
            *filters,
            Post.boost_count > 0,
            (Post.boost_score_updated_at.is_(None))
            | (Post.boost_score_updated_at < stale_before),
        )
        .order_by(Post.boost_count.desc(), Post.created_at.desc(), Post.post_id.desc())
        .limit(take)
    )
    return [r[0] for r in rows.all()]
