"""
Candidate selection: which posts get scored at all.

A full scan of the lookback window would grow with the table, so candidates
are the union of five small, independently indexed buckets:

  recent     — top-level, created inside the recency window, newest first
  boosted    — top-level, boost_count > 0, most boosted first
  bookmarked — top-level, bookmark_count > 0, most bookmarked first
  commented  — top-level, comment_count > 0, most commented first
  replies    — replies with boosts or bookmarks, by their sum

Every bucket shares the scope filter (visibility allow-list, author set),
excludes soft-deleted posts and stays inside the lookback window. The union
is therefore never larger than the sum of the bucket caps.

When the narrow tier finds nothing the selector widens, one step at a time:

  (30 days, top-level) → (365 days, top-level) → (365 days, replies allowed)

and stops at the first non-empty tier. Tiers are never merged.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import and_, false, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from trendrank.config import Settings, settings
from trendrank.models import RANKABLE_VISIBILITIES, VISIBILITY_ONLY_ME, Post
from trendrank.telemetry import CANDIDATES_TOTAL

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CandidateScope:
    """
    visibilities: allow-list already resolved for the viewer.
    author_ids:   None for site-wide; a set (possibly empty) restricts authors.
    viewer_id:    the viewer also sees their own non-onlyMe posts.
    """

    visibilities: frozenset = frozenset(RANKABLE_VISIBILITIES)
    author_ids: Optional[frozenset] = None
    viewer_id: Optional[str] = None

    @classmethod
    def build(
        cls,
        visibilities: Iterable[str],
        author_ids: Optional[Iterable[str]] = None,
        viewer_id: Optional[str] = None,
    ) -> "CandidateScope":
        return cls(
            visibilities=frozenset(v for v in visibilities if v != VISIBILITY_ONLY_ME),
            author_ids=None if author_ids is None else frozenset(author_ids),
            viewer_id=viewer_id,
        )

    @property
    def is_empty(self) -> bool:
        if self.author_ids is not None and not self.author_ids:
            return True
        return not self.visibilities and self.viewer_id is None


@dataclass(frozen=True)
class SelectionTier:
    name: str
    lookback_days: int
    top_level_only: bool


@dataclass(frozen=True)
class BucketCaps:
    recent: int = 8000
    boosted: int = 1500
    bookmarked: int = 1500
    commented: int = 1500
    replies: int = 1200
    recent_window_hours: int = 72

    @classmethod
    def from_settings(cls, cfg: Settings) -> "BucketCaps":
        return cls(
            recent=cfg.candidates_recent_take,
            boosted=cfg.candidates_boosted_take,
            bookmarked=cfg.candidates_bookmarked_take,
            commented=cfg.candidates_commented_take,
            replies=cfg.candidates_replies_take,
            recent_window_hours=cfg.popular_recent_window_hours,
        )

    @property
    def total(self) -> int:
        return self.recent + self.boosted + self.bookmarked + self.commented + self.replies


def scope_filters(scope: CandidateScope) -> list:
    """SQL predicates shared by every bucket (and by the cache warm-up)."""
    visible = []
    if scope.visibilities:
        visible.append(Post.visibility.in_(sorted(scope.visibilities)))
    if scope.viewer_id is not None:
        visible.append(
            and_(Post.user_id == scope.viewer_id, Post.visibility != VISIBILITY_ONLY_ME)
        )

    filters = [Post.deleted_at.is_(None), or_(*visible) if visible else false()]
    if scope.author_ids is not None:
        filters.append(Post.user_id.in_(sorted(scope.author_ids)))
    return filters


class CandidateSelector:
    def __init__(self, caps: BucketCaps, tiers: list[SelectionTier]):
        self.caps = caps
        self.tiers = tiers

    @classmethod
    def from_settings(cls, cfg: Settings = settings) -> "CandidateSelector":
        return cls(
            caps=BucketCaps.from_settings(cfg),
            tiers=[
                SelectionTier("narrow", cfg.popular_lookback_days, True),
                SelectionTier("wide", cfg.popular_fallback_lookback_days, True),
                SelectionTier("widest", cfg.popular_fallback_lookback_days, False),
            ],
        )

    async def _bucket(self, db: AsyncSession, where: list, order_by: list, take: int) -> list[str]:
        if take <= 0:
            return []
        rows = await db.execute(
            select(Post.post_id).where(*where).order_by(*order_by).limit(take)
        )
        return [r[0] for r in rows.all()]

    async def select(
        self,
        db: AsyncSession,
        scope: CandidateScope,
        as_of: datetime,
        tier: SelectionTier,
    ) -> set[str]:
        if scope.is_empty:
            return set()

        base = scope_filters(scope) + [
            Post.created_at >= as_of - timedelta(days=tier.lookback_days)
        ]
        top = base + [Post.parent_id.is_(None)] if tier.top_level_only else base
        tiebreak = [Post.created_at.desc(), Post.post_id.desc()]
        caps = self.caps

        ids: set[str] = set()
        ids.update(await self._bucket(
            db,
            top + [Post.created_at >= as_of - timedelta(hours=caps.recent_window_hours)],
            tiebreak,
            caps.recent,
        ))
        for counter, take in (
            (Post.boost_count, caps.boosted),
            (Post.bookmark_count, caps.bookmarked),
            (Post.comment_count, caps.commented),
        ):
            ids.update(await self._bucket(db, top + [counter > 0], [counter.desc(), *tiebreak], take))
        ids.update(await self._bucket(
            db,
            base + [
                Post.parent_id.is_not(None),
                or_(Post.boost_count > 0, Post.bookmark_count > 0),
            ],
            [(Post.boost_count + Post.bookmark_count).desc(), *tiebreak],
            caps.replies,
        ))
        return ids

    async def select_with_fallback(
        self,
        db: AsyncSession,
        scope: CandidateScope,
        as_of: datetime,
    ) -> tuple[set[str], Optional[SelectionTier]]:
        """First non-empty tier wins; returns (ids, tier) or (empty, None)."""
        for tier in self.tiers:
            ids = await self.select(db, scope, as_of, tier)
            if ids:
                CANDIDATES_TOTAL.labels(tier=tier.name).inc(len(ids))
                if tier is not self.tiers[0]:
                    logger.info("Candidate selection widened to %s tier (%d ids)", tier.name, len(ids))
                return ids, tier
        return set(), None


candidate_selector = CandidateSelector.from_settings()
