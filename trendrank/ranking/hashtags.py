"""
Hashtag trend scores.

Each snapshot batch aggregates, per (visibility, tag), the decayed usage of
the tag across recent top-level posts:

  score       = Σ 0.5 ** (age / 12h)
  usage_count = number of posts

The primary lookback is two weeks; on sparse data it widens once to a year
so the bonus (and any trending-tags UI) is never silently empty. The result
feeds the hashtag alignment bonus in scoring and is persisted as its own
generation next to the post snapshot.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from trendrank.config import Settings, settings
from trendrank.models import (
    VISIBILITY_ONLY_ME,
    HashtagTrendingScoreSnapshot,
    Post,
)
from trendrank.ranking.cursor import (
    finite_number,
    format_ts,
    pack_token,
    parse_ts,
    unpack_token,
)
from trendrank.ranking.scoring import decay

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HashtagTrend:
    visibility: str
    tag: str
    score: float
    usage_count: int


def normalize_tag(tag) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.strip().lower()


@dataclass
class TagScores:
    """Lookup over one hashtag generation."""

    as_of: Optional[datetime] = None
    scores: dict[tuple[str, str], float] = field(default_factory=dict)

    @classmethod
    def from_trends(cls, trends: Iterable[HashtagTrend], as_of: Optional[datetime] = None) -> "TagScores":
        return cls(as_of=as_of, scores={(t.visibility, t.tag): t.score for t in trends})

    def best_for(self, visibility: str, hashtags: Optional[list]) -> Optional[float]:
        best = None
        for raw in hashtags or []:
            tag = normalize_tag(raw)
            if not tag:
                continue
            value = self.scores.get((visibility, tag))
            if value is not None and (best is None or value > best):
                best = value
        return best

    def global_max(self, visibilities: Iterable[str]) -> Optional[float]:
        wanted = set(visibilities)
        values = [s for (vis, _), s in self.scores.items() if vis in wanted]
        return max(values) if values else None


async def _aggregate(
    db: AsyncSession,
    as_of: datetime,
    lookback_days: int,
    cfg: Settings,
) -> list[HashtagTrend]:
    min_created_at = as_of - timedelta(days=lookback_days)
    rows = await db.execute(
        select(Post.visibility, Post.hashtags, Post.created_at)
        .where(
            Post.deleted_at.is_(None),
            Post.parent_id.is_(None),
            Post.visibility != VISIBILITY_ONLY_ME,
            Post.created_at >= min_created_at,
        )
        .order_by(Post.created_at.desc())
        .limit(cfg.hashtag_scan_take)
    )

    scores: dict[tuple[str, str], float] = defaultdict(float)
    usage: dict[tuple[str, str], int] = defaultdict(int)
    for visibility, hashtags, created_at in rows.all():
        # A post counts once per tag, however often it repeats it.
        for tag in {normalize_tag(t) for t in hashtags or []}:
            if not tag:
                continue
            key = (visibility, tag)
            scores[key] += decay(as_of, created_at, cfg.popular_half_life_seconds)
            usage[key] += 1

    trends = [
        HashtagTrend(visibility=vis, tag=tag, score=value, usage_count=usage[(vis, tag)])
        for (vis, tag), value in scores.items()
    ]
    trends.sort(key=lambda t: (-t.score, -t.usage_count, t.tag))
    return trends[: cfg.hashtag_rows_take]


async def compute_trends(
    db: AsyncSession,
    as_of: datetime,
    cfg: Settings = settings,
) -> list[HashtagTrend]:
    trends = await _aggregate(db, as_of, cfg.hashtag_lookback_days, cfg)
    if not trends:
        trends = await _aggregate(db, as_of, cfg.hashtag_fallback_lookback_days, cfg)
    return trends


async def load_latest_tag_scores(db: AsyncSession) -> TagScores:
    latest = (
        await db.execute(select(func.max(HashtagTrendingScoreSnapshot.as_of)))
    ).scalar_one_or_none()
    if latest is None:
        return TagScores()

    rows = await db.execute(
        select(
            HashtagTrendingScoreSnapshot.visibility,
            HashtagTrendingScoreSnapshot.tag,
            HashtagTrendingScoreSnapshot.score,
        ).where(HashtagTrendingScoreSnapshot.as_of == latest)
    )
    return TagScores(
        as_of=latest,
        scores={(vis, tag): value for vis, tag, value in rows.all()},
    )


# ── Trending tags read ─────────────────────────────────────────────────────
#
# Tags are summed across the viewer's visibilities and ordered by
# (score DESC, usage_count DESC, tag ASC). A cursor only applies to the
# generation that issued it; once a newer generation lands the list restarts.

@dataclass(frozen=True)
class TrendingTag:
    tag: str
    score: float
    usage_count: int

    @property
    def sort_key(self) -> tuple[float, int, str]:
        return (-self.score, -self.usage_count, self.tag)


@dataclass(frozen=True)
class TagCursor:
    as_of: datetime
    score: float
    usage_count: int
    tag: str

    @property
    def sort_key(self) -> tuple[float, int, str]:
        return (-self.score, -self.usage_count, self.tag)


@dataclass
class TrendingTagsPage:
    tags: list[TrendingTag]
    next_cursor: Optional[str]
    as_of: Optional[datetime]


def encode_tag_cursor(cursor: TagCursor) -> str:
    return pack_token({
        "asOf": format_ts(cursor.as_of),
        "score": cursor.score,
        "usage": cursor.usage_count,
        "tag": cursor.tag,
    })


def decode_tag_cursor(token: Optional[str]) -> Optional[TagCursor]:
    payload = unpack_token(token)
    if payload is None:
        return None
    as_of = parse_ts(payload.get("asOf"))
    score = finite_number(payload.get("score"))
    usage = payload.get("usage")
    tag = payload.get("tag")
    if as_of is None or score is None:
        return None
    if isinstance(usage, bool) or not isinstance(usage, int):
        return None
    if not isinstance(tag, str) or not tag:
        return None
    return TagCursor(as_of=as_of, score=score, usage_count=usage, tag=tag)


async def trending_tags(
    db: AsyncSession,
    visibilities: Iterable[str],
    limit: int,
    cursor_token: Optional[str] = None,
) -> TrendingTagsPage:
    snap = HashtagTrendingScoreSnapshot
    latest = (await db.execute(select(func.max(snap.as_of)))).scalar_one_or_none()
    allowed = sorted(set(visibilities) - {VISIBILITY_ONLY_ME})
    if latest is None or not allowed:
        return TrendingTagsPage(tags=[], next_cursor=None, as_of=latest)

    rows = await db.execute(
        select(snap.tag, snap.score, snap.usage_count)
        .where(snap.as_of == latest, snap.visibility.in_(allowed))
        .order_by(snap.tag, snap.visibility)
    )
    scores: dict[str, float] = defaultdict(float)
    usage: dict[str, int] = defaultdict(int)
    for tag, value, count in rows.all():
        scores[tag] += value
        usage[tag] += count or 0

    ranked = sorted(
        (TrendingTag(tag, scores[tag], usage[tag]) for tag in scores),
        key=lambda t: t.sort_key,
    )

    cursor = decode_tag_cursor(cursor_token)
    if cursor is not None and cursor.as_of == latest:
        ranked = [t for t in ranked if t.sort_key > cursor.sort_key]

    page, has_more = ranked[:limit], len(ranked) > limit
    next_cursor = None
    if has_more and page:
        last = page[-1]
        next_cursor = encode_tag_cursor(TagCursor(latest, last.score, last.usage_count, last.tag))
    return TrendingTagsPage(tags=page, next_cursor=next_cursor, as_of=latest)
