"""
Loads the auxiliary scoring signals for a batch of candidate posts.

All lookups are batched per signal (one query per chunk of ids), so the cost
grows with the candidate count, never with the table size.
"""
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from trendrank.config import Settings, settings
from trendrank.database import chunked
from trendrank.models import Post, User
from trendrank.ranking.hashtags import TagScores, load_latest_tag_scores
from trendrank.ranking.scoring import AuxSignals, ScoreWeights, decay, score


def pin_weight_for(user: Optional[User], cfg: Settings = settings) -> float:
    if user is None:
        return 0.0
    if user.premium:
        return cfg.pin_score_premium
    if user.is_verified:
        return cfg.pin_score_verified
    return cfg.pin_score_base


async def comment_signals(
    db: AsyncSession,
    post_ids: Sequence[str],
    as_of: datetime,
    half_life_seconds: float,
    window: timedelta,
) -> dict[str, float]:
    """Σ decay(half_life) over live replies created inside the window."""
    min_created_at = as_of - window
    totals: dict[str, float] = defaultdict(float)
    for chunk in chunked(post_ids):
        rows = await db.execute(
            select(Post.parent_id, Post.created_at).where(
                Post.parent_id.in_(chunk),
                Post.deleted_at.is_(None),
                Post.created_at >= min_created_at,
            )
        )
        for parent_id, created_at in rows.all():
            totals[parent_id] += decay(as_of, created_at, half_life_seconds)
    return totals


async def deleted_post_ids(db: AsyncSession, post_ids: Iterable[str]) -> set[str]:
    deleted: set[str] = set()
    for chunk in chunked(set(post_ids)):
        rows = await db.execute(
            select(Post.post_id).where(Post.post_id.in_(chunk), Post.deleted_at.is_not(None))
        )
        deleted.update(r[0] for r in rows.all())
    return deleted


def deleted_ancestor_count(post: Post, deleted: set[str]) -> int:
    """Deleted direct parent, plus a deleted thread root when it is not the parent."""
    count = 0
    if post.parent_id is not None and post.parent_id in deleted:
        count += 1
    if (
        post.root_id is not None
        and post.root_id != post.parent_id
        and post.root_id != post.post_id
        and post.root_id in deleted
    ):
        count += 1
    return count


async def load_owners(db: AsyncSession, user_ids: Iterable[str]) -> dict[str, User]:
    owners: dict[str, User] = {}
    for chunk in chunked(set(user_ids)):
        rows = await db.execute(select(User).where(User.user_id.in_(chunk)))
        owners.update((u.user_id, u) for u in rows.scalars().all())
    return owners


async def load_aux_signals(
    db: AsyncSession,
    posts: Sequence[Post],
    as_of: datetime,
    visibilities: Iterable[str],
    tag_scores: Optional[TagScores] = None,
    cfg: Settings = settings,
    half_life_seconds: Optional[float] = None,
    comment_window: Optional[timedelta] = None,
) -> dict[str, AuxSignals]:
    """
    Comment signals default to the popularity half-life over the lookback
    window; the featured rising bucket passes its own, shorter pair.
    """
    if not posts:
        return {}

    ids = [p.post_id for p in posts]
    comments = await comment_signals(
        db,
        ids,
        as_of,
        half_life_seconds or cfg.popular_half_life_seconds,
        comment_window or timedelta(days=cfg.popular_lookback_days),
    )
    owners = await load_owners(db, (p.user_id for p in posts))

    ancestor_ids = {p.parent_id for p in posts if p.parent_id} | {
        p.root_id for p in posts if p.root_id
    }
    deleted = await deleted_post_ids(db, ancestor_ids) if ancestor_ids else set()

    if tag_scores is None:
        tag_scores = await load_latest_tag_scores(db)
    global_max = tag_scores.global_max(visibilities)

    signals: dict[str, AuxSignals] = {}
    for post in posts:
        owner = owners.get(post.user_id)
        pinned = owner is not None and owner.pinned_post_id == post.post_id
        signals[post.post_id] = AuxSignals(
            comment_signal=comments.get(post.post_id, 0.0),
            best_tag_score=tag_scores.best_for(post.visibility, post.hashtags),
            global_tag_max=global_max,
            pin_weight=pin_weight_for(owner, cfg) if pinned else 0.0,
            deleted_ancestor_count=deleted_ancestor_count(post, deleted),
        )
    return signals


async def load_posts(db: AsyncSession, post_ids: Iterable[str]) -> list[Post]:
    """Load posts by id, refreshing any instance already in the session."""
    posts: list[Post] = []
    for chunk in chunked(set(post_ids)):
        rows = await db.execute(
            select(Post)
            .where(Post.post_id.in_(chunk))
            .execution_options(populate_existing=True)
        )
        posts.extend(rows.scalars().all())
    return posts


async def score_candidates(
    db: AsyncSession,
    post_ids: Iterable[str],
    as_of: datetime,
    visibilities: Iterable[str],
    tag_scores: Optional[TagScores] = None,
    cfg: Settings = settings,
    weights: Optional[ScoreWeights] = None,
    comment_window: Optional[timedelta] = None,
) -> list[tuple[Post, float]]:
    """Score every candidate at `as_of`. Unknown ids are dropped."""
    weights = weights or ScoreWeights.from_settings(cfg)
    posts = await load_posts(db, post_ids)
    signals = await load_aux_signals(
        db, posts, as_of, visibilities, tag_scores, cfg,
        half_life_seconds=weights.half_life_seconds,
        comment_window=comment_window,
    )
    return [(p, score(p, as_of, signals[p.post_id], weights)) for p in posts]
