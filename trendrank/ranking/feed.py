"""
Ranked feed reads: rank(scope, cursor, limit).

Two backends serve the same contract:

  Snapshot │ Read one precomputed generation (post_popular_score_snapshots)
  ─────────┼──────────────────────────────────────────────────────────────
           │  Page 1 picks the latest as_of; later pages reuse the cursor's.
           │  Keyset query, limit + 1 rows. Used by site-wide, following
           │  and featured feeds. Falls back to live scoring when no
           │  generation exists, the cursor's generation has aged out of
           │  retention, or page 1 of the generation has nothing in scope.

  Live     │ Select candidates, score them at as_of, sort and page in memory
  ─────────┼──────────────────────────────────────────────────────────────
           │  Page 1 warms the boost-score cache for the top boosted stale
           │  candidates and freezes as_of = now. Later pages reuse the
           │  cursor's as_of verbatim and skip the warm-up. Used by profiles.

Either way the page is hydrated against posts and ids soft-deleted since
scoring are dropped; the cursor still advances past them.

The featured feed applies its extra rules (see featured.py) on both paths.
"""
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Literal, Optional, Sequence

from opentelemetry import trace
from sqlalchemy import and_, false, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from trendrank.config import Settings, settings
from trendrank.models import (
    RANKABLE_VISIBILITIES,
    VISIBILITY_ONLY_ME,
    Post,
    PostPopularScoreSnapshot,
    utcnow,
)
from trendrank.ranking import cursor as cursor_codec
from trendrank.ranking.candidates import CandidateScope, CandidateSelector, scope_filters
from trendrank.ranking.cursor import Cursor
from trendrank.ranking.featured import (
    AuthoredRow,
    FeaturedRules,
    interleave,
    pick_per_author,
    rising_rows,
)
from trendrank.ranking.pagination import (
    RankedRow,
    keyset_condition,
    next_cursor_for,
    paginate,
    sort_ranked,
)
from trendrank.ranking.score_cache import ensure_fresh, stale_boosted_post_ids
from trendrank.ranking.signals import score_candidates
from trendrank.ranking.snapshots import generation_exists, latest_as_of
from trendrank.telemetry import CURSOR_DECODE_FAILURES, RANK_LATENCY, RANK_REQUESTS_TOTAL

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SOURCE_SNAPSHOT = "snapshot"
SOURCE_LIVE = "live"


@dataclass(frozen=True)
class FeedScope:
    kind: Literal["trending", "following", "profile", "featured"]
    candidates: CandidateScope
    # Featured only: this author never appears (the viewer themself).
    exclude_user_id: Optional[str] = None

    @property
    def mode(self) -> str:
        return SOURCE_LIVE if self.kind == "profile" else SOURCE_SNAPSHOT

    @classmethod
    def trending(cls, visibilities=RANKABLE_VISIBILITIES, viewer_id=None) -> "FeedScope":
        return cls("trending", CandidateScope.build(visibilities, viewer_id=viewer_id))

    @classmethod
    def following(cls, viewer_id: str, followee_ids, visibilities=RANKABLE_VISIBILITIES) -> "FeedScope":
        authors = set(followee_ids) | {viewer_id}
        return cls("following", CandidateScope.build(visibilities, authors, viewer_id))

    @classmethod
    def profile(cls, user_id: str, visibilities=RANKABLE_VISIBILITIES, viewer_id=None) -> "FeedScope":
        return cls("profile", CandidateScope.build(visibilities, {user_id}, viewer_id))

    @classmethod
    def featured(
        cls,
        visibilities=RANKABLE_VISIBILITIES,
        viewer_id: Optional[str] = None,
        author_ids: Optional[Iterable[str]] = None,
    ) -> "FeedScope":
        # No own-posts override: the viewer's posts are excluded outright.
        return cls("featured", CandidateScope.build(visibilities, author_ids), exclude_user_id=viewer_id)


@dataclass
class FeedPage:
    items: list[str]
    next_cursor: Optional[str]
    as_of: Optional[datetime]
    source: str
    scores: dict[str, float] = field(default_factory=dict)
    posts: list[Post] = field(default_factory=list)


def snapshot_scope_filters(scope: CandidateScope) -> list:
    """scope_filters() expressed against the snapshot table."""
    snap = PostPopularScoreSnapshot
    visible = []
    if scope.visibilities:
        visible.append(snap.visibility.in_(sorted(scope.visibilities)))
    if scope.viewer_id is not None:
        visible.append(and_(snap.user_id == scope.viewer_id, snap.visibility != VISIBILITY_ONLY_ME))
    filters = [or_(*visible) if visible else false()]
    if scope.author_ids is not None:
        filters.append(snap.user_id.in_(sorted(scope.author_ids)))
    return filters


class RankingService:
    def __init__(self, selector: Optional[CandidateSelector] = None, cfg: Settings = settings):
        self.selector = selector or CandidateSelector.from_settings(cfg)
        self.featured = FeaturedRules.from_settings(cfg)
        self.cfg = cfg

    async def rank(
        self,
        db: AsyncSession,
        scope: FeedScope,
        cursor_token: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> FeedPage:
        limit = max(1, min(limit or self.cfg.feed_page_size, self.cfg.feed_max_page_size))
        cursor = cursor_codec.decode(cursor_token)
        if cursor_token and cursor is None:
            CURSOR_DECODE_FAILURES.inc()
            logger.info("Undecodable cursor, serving first page")

        t0 = time.perf_counter()
        with tracer.start_as_current_span("rank") as span:
            span.set_attribute("rank.scope", scope.kind)
            span.set_attribute("rank.has_cursor", cursor is not None)

            page = None
            if scope.kind == "featured":
                page = await self._rank_featured_from_snapshot(db, scope, cursor, limit)
            elif scope.mode == SOURCE_SNAPSHOT:
                page = await self._rank_from_snapshot(db, scope, cursor, limit)
            if page is None:
                page = await self._rank_live(db, scope, cursor, limit)

            span.set_attribute("rank.source", page.source)
            span.set_attribute("rank.items", len(page.items))

        RANK_LATENCY.labels(scope=scope.kind, source=page.source).observe(time.perf_counter() - t0)
        RANK_REQUESTS_TOTAL.labels(scope=scope.kind, source=page.source).inc()
        return page

    async def _snapshot_generation(self, db: AsyncSession, cursor: Optional[Cursor]) -> Optional[datetime]:
        if cursor is not None:
            if not await generation_exists(db, cursor.as_of):
                logger.info("Cursor generation %s expired, scoring live", cursor.as_of)
                return None
            return cursor.as_of
        return await latest_as_of(db)

    async def _rank_from_snapshot(
        self,
        db: AsyncSession,
        scope: FeedScope,
        cursor: Optional[Cursor],
        limit: int,
    ) -> Optional[FeedPage]:
        """None means "no usable generation"; the caller scores live instead."""
        as_of = await self._snapshot_generation(db, cursor)
        if as_of is None:
            return None

        if scope.candidates.is_empty:
            return FeedPage(items=[], next_cursor=None, as_of=as_of, source=SOURCE_SNAPSHOT)

        snap = PostPopularScoreSnapshot
        stmt = select(snap.post_id, snap.score, snap.created_at).where(
            snap.as_of == as_of, *snapshot_scope_filters(scope.candidates)
        )
        if cursor is not None:
            stmt = stmt.where(keyset_condition(snap.score, snap.created_at, snap.post_id, cursor))
        stmt = stmt.order_by(
            snap.score.desc(), snap.created_at.desc(), snap.post_id.desc()
        ).limit(limit + 1)

        with tracer.start_as_current_span("rank_snapshot_read"):
            rows = [RankedRow(pid, s, c) for pid, s, c in (await db.execute(stmt)).all()]

        # A generation with nothing in scope on page 1: try live candidates.
        if not rows and cursor is None:
            return None

        page, has_more = rows[:limit], len(rows) > limit
        return await self._finish(db, page, next_cursor_for(page, has_more, as_of), as_of, SOURCE_SNAPSHOT)

    async def _rank_featured_from_snapshot(
        self,
        db: AsyncSession,
        scope: FeedScope,
        cursor: Optional[Cursor],
        limit: int,
    ) -> Optional[FeedPage]:
        as_of = await self._snapshot_generation(db, cursor)
        if as_of is None:
            return None

        if scope.candidates.is_empty:
            return FeedPage(items=[], next_cursor=None, as_of=as_of, source=SOURCE_SNAPSHOT)

        rules = self.featured
        snap = PostPopularScoreSnapshot
        stmt = select(snap.post_id, snap.score, snap.created_at, snap.user_id).where(
            snap.as_of == as_of,
            snap.parent_id.is_(None),
            snap.created_at >= as_of - timedelta(days=rules.lookback_days),
            *snapshot_scope_filters(scope.candidates),
        )
        if scope.exclude_user_id is not None:
            stmt = stmt.where(snap.user_id != scope.exclude_user_id)
        if cursor is not None:
            stmt = stmt.where(keyset_condition(snap.score, snap.created_at, snap.post_id, cursor))
        stmt = stmt.order_by(
            snap.score.desc(), snap.created_at.desc(), snap.post_id.desc()
        ).limit(rules.scan_take(limit))

        with tracer.start_as_current_span("rank_featured_read"):
            rows = [AuthoredRow(pid, s, c, uid) for pid, s, c, uid in (await db.execute(stmt)).all()]

        if cursor is not None:
            picked = pick_per_author(rows, rules.max_per_author, limit + 1)
            page, has_more = picked[:limit], len(picked) > limit
            return await self._finish(db, page, next_cursor_for(page, has_more, as_of), as_of, SOURCE_SNAPSHOT)

        if not rows:
            return None

        top_take, rising_take = rules.split(limit)
        top_picked = pick_per_author(rows, rules.max_per_author, top_take + 1)
        top = top_picked[:top_take]
        next_cursor = next_cursor_for(top, len(top_picked) > top_take, as_of)

        rising: list[AuthoredRow] = []
        if rising_take > 0:
            counts = Counter(r.user_id for r in top)
            with tracer.start_as_current_span("rank_featured_rising"):
                candidates = await rising_rows(
                    db,
                    scope.candidates,
                    as_of,
                    rules,
                    exclude_user_id=scope.exclude_user_id,
                    exclude_post_ids=[r.post_id for r in top],
                    exclude_author_ids=[u for u, n in counts.items() if n >= rules.max_per_author],
                    cfg=self.cfg,
                )
            rising = pick_per_author(candidates, rules.max_per_author, rising_take, counts)

        page = interleave(top, rising, limit)
        return await self._finish(db, page, next_cursor, as_of, SOURCE_SNAPSHOT)

    async def _rank_live(
        self,
        db: AsyncSession,
        scope: FeedScope,
        cursor: Optional[Cursor],
        limit: int,
    ) -> FeedPage:
        cfg = self.cfg
        candidates = scope.candidates

        if cursor is not None:
            as_of = cursor.as_of
        else:
            as_of = utcnow()
            if not candidates.is_empty:
                with tracer.start_as_current_span("rank_warm_cache"):
                    window = [
                        *scope_filters(candidates),
                        Post.parent_id.is_(None),
                        Post.created_at >= as_of - timedelta(days=cfg.popular_lookback_days),
                    ]
                    warm_ids = await stale_boosted_post_ids(
                        db, window, as_of, cfg.popular_warmup_take, cfg
                    )
                    await ensure_fresh(db, warm_ids, as_of, cfg)

        with tracer.start_as_current_span("rank_live_score"):
            ids, _ = await self.selector.select_with_fallback(db, candidates, as_of)
            scored = await score_candidates(db, ids, as_of, candidates.visibilities, cfg=cfg)

        if scope.kind == "featured":
            since = as_of - timedelta(days=self.featured.lookback_days)
            rows = sort_ranked([
                AuthoredRow(p.post_id, s, p.created_at, p.user_id)
                for p, s in scored
                if p.parent_id is None
                and p.created_at >= since
                and p.user_id != scope.exclude_user_id
            ])
            if cursor is not None:
                rows = [r for r in rows if r.sort_key < cursor.sort_key]
            picked = pick_per_author(rows, self.featured.max_per_author, limit + 1)
            page, has_more = picked[:limit], len(picked) > limit
        else:
            rows = sort_ranked([RankedRow(p.post_id, s, p.created_at) for p, s in scored])
            page, has_more = paginate(rows, cursor, limit)
        return await self._finish(db, page, next_cursor_for(page, has_more, as_of), as_of, SOURCE_LIVE)

    async def _finish(
        self,
        db: AsyncSession,
        page: Sequence[RankedRow],
        next_cursor: Optional[Cursor],
        as_of: datetime,
        source: str,
    ) -> FeedPage:
        posts = await self._hydrate(db, [r.post_id for r in page])
        scores = {r.post_id: r.score for r in page if r.post_id in posts}
        return FeedPage(
            items=[r.post_id for r in page if r.post_id in posts],
            next_cursor=cursor_codec.encode(next_cursor) if next_cursor else None,
            as_of=as_of,
            source=source,
            scores=scores,
            posts=[posts[r.post_id] for r in page if r.post_id in posts],
        )

    async def _hydrate(self, db: AsyncSession, post_ids: list[str]) -> dict[str, Post]:
        if not post_ids:
            return {}
        with tracer.start_as_current_span("rank_hydrate"):
            rows = await db.execute(
                select(Post).where(Post.post_id.in_(post_ids), Post.deleted_at.is_(None))
            )
            return {p.post_id: p for p in rows.scalars().all()}


ranking_service = RankingService()
