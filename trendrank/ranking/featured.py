"""
Featured feed rules, layered on the popular snapshot.

  - top-level posts only, created inside the featured lookback
  - never the viewer's own posts
  - at most `max_per_author` posts per author on a page
  - page 1 blends the top of the snapshot with posts rising right now,
    interleaved top / rising so fresh posts are not clumped at the end;
    the cursor continues the top bucket only, so later pages keep the
    stable snapshot order

Rising posts are scored like the popular feed but with a 6 h half-life and
a 48 h window, at the generation's as_of.
"""
from collections import Counter
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from trendrank.config import Settings, settings
from trendrank.models import Post
from trendrank.ranking.candidates import CandidateScope, scope_filters
from trendrank.ranking.pagination import RankedRow, sort_ranked
from trendrank.ranking.scoring import ScoreWeights
from trendrank.ranking.signals import score_candidates


@dataclass(frozen=True)
class FeaturedRules:
    lookback_days: int = 10
    max_per_author: int = 1
    scan_take_max: int = 500
    top_ratio: float = 0.7
    rising_window_hours: int = 48
    rising_half_life_seconds: float = 6 * 60 * 60
    rising_candidates_take: int = 2000
    rising_rows_take: int = 200

    @classmethod
    def from_settings(cls, cfg: Settings = settings) -> "FeaturedRules":
        return cls(
            lookback_days=cfg.featured_lookback_days,
            max_per_author=cfg.featured_max_per_author,
            scan_take_max=cfg.featured_scan_take_max,
            top_ratio=cfg.featured_rising_mix_top_ratio,
            rising_window_hours=cfg.featured_rising_window_hours,
            rising_half_life_seconds=cfg.featured_rising_half_life_seconds,
            rising_candidates_take=cfg.featured_rising_candidates_take,
            rising_rows_take=cfg.featured_rising_rows_take,
        )

    def scan_take(self, limit: int) -> int:
        # Per-author capping discards rows, so read well past the page.
        return min(self.scan_take_max, max(limit * 40, limit + 1))

    def split(self, limit: int) -> tuple[int, int]:
        """(top, rising) slot counts for a first page."""
        top = max(1, min(limit, round(limit * self.top_ratio)))
        return top, max(0, limit - top)


@dataclass(frozen=True)
class AuthoredRow(RankedRow):
    user_id: str = ""


def pick_per_author(
    rows: Iterable[AuthoredRow],
    max_per_author: int,
    take: int,
    counts: Optional[Counter] = None,
) -> list[AuthoredRow]:
    """
    Walk rows in order, skipping authors already at the cap, until `take`
    rows are picked. `counts` is updated in place when given.
    """
    counts = counts if counts is not None else Counter()
    picked: list[AuthoredRow] = []
    for row in rows:
        if len(picked) >= take:
            break
        if counts[row.user_id] >= max_per_author:
            continue
        counts[row.user_id] += 1
        picked.append(row)
    return picked


def interleave(top: Sequence[RankedRow], rising: Sequence[RankedRow], limit: int) -> list[RankedRow]:
    combined: list[RankedRow] = []
    top_q, rising_q = list(top), list(rising)
    while len(combined) < limit and (top_q or rising_q):
        if top_q:
            combined.append(top_q.pop(0))
        if len(combined) >= limit:
            break
        if rising_q:
            combined.append(rising_q.pop(0))
    return combined


async def rising_rows(
    db: AsyncSession,
    scope: CandidateScope,
    as_of: datetime,
    rules: FeaturedRules,
    exclude_user_id: Optional[str] = None,
    exclude_post_ids: Iterable[str] = (),
    exclude_author_ids: Iterable[str] = (),
    cfg: Settings = settings,
) -> list[AuthoredRow]:
    """Top-level posts with any engagement inside the rising window, best first."""
    if scope.is_empty:
        return []

    window = timedelta(hours=rules.rising_window_hours)
    where = scope_filters(scope) + [
        Post.parent_id.is_(None),
        Post.created_at >= as_of - window,
        or_(Post.boost_count > 0, Post.bookmark_count > 0, Post.comment_count > 0),
    ]
    if exclude_user_id is not None:
        where.append(Post.user_id != exclude_user_id)
    exclude_post_ids = sorted(set(exclude_post_ids))
    if exclude_post_ids:
        where.append(Post.post_id.not_in(exclude_post_ids))
    exclude_author_ids = sorted(set(exclude_author_ids))
    if exclude_author_ids:
        where.append(Post.user_id.not_in(exclude_author_ids))

    rows = await db.execute(
        select(Post.post_id)
        .where(*where)
        .order_by(
            (Post.boost_count + Post.bookmark_count + Post.comment_count).desc(),
            Post.created_at.desc(),
            Post.post_id.desc(),
        )
        .limit(rules.rising_candidates_take)
    )
    ids = [r[0] for r in rows.all()]
    if not ids:
        return []

    weights = replace(ScoreWeights.from_settings(cfg), half_life_seconds=rules.rising_half_life_seconds)
    scored = await score_candidates(
        db, ids, as_of, scope.visibilities, cfg=cfg, weights=weights, comment_window=window
    )
    ranked = sort_ranked([
        AuthoredRow(p.post_id, s, p.created_at, p.user_id) for p, s in scored if s > 0
    ])
    return ranked[: rules.rising_rows_take]
