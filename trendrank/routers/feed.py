"""
Ranked feed endpoints:
  GET /feed/trending           — site-wide popular posts (snapshot-backed)
  GET /feed/following          — popular posts from accounts the viewer follows
  GET /feed/users/{user_id}    — one author's posts ranked by popularity (live)
  GET /feed/featured           — capped per author, blends rising posts on page 1

`visibility` is the viewer's allow-list, already resolved by the caller's
tier service; this API never resolves tiers itself. A malformed `cursor`
silently restarts the scroll.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from trendrank.config import settings
from trendrank.database import get_db
from trendrank.models import (
    RANKABLE_VISIBILITIES,
    VISIBILITY_ONLY_ME,
    VISIBILITY_PUBLIC,
    Follow,
    User,
)
from trendrank.ranking.feed import FeedPage, FeedScope, ranking_service
from trendrank.schemas import FeedPost, FeedResponse

logger = logging.getLogger(__name__)
router = APIRouter()
tracer = trace.get_tracer(__name__)

ALLOWED_VISIBILITY_PARAMS = set(RANKABLE_VISIBILITIES) | {VISIBILITY_ONLY_ME}


def _visibilities(visibility: list[str]) -> list[str]:
    unknown = [v for v in visibility if v not in ALLOWED_VISIBILITY_PARAMS]
    if unknown:
        raise HTTPException(status_code=422, detail=f"Unknown visibility: {', '.join(unknown)}")
    return visibility


def _to_response(page: FeedPage) -> FeedResponse:
    return FeedResponse(
        items=[
            FeedPost(
                post_id=p.post_id,
                user_id=p.user_id,
                content=p.content,
                visibility=p.visibility,
                parent_id=p.parent_id,
                hashtags=list(p.hashtags or []),
                boost_count=p.boost_count,
                bookmark_count=p.bookmark_count,
                comment_count=p.comment_count,
                created_at=p.created_at,
                score=page.scores[p.post_id],
            )
            for p in page.posts
        ],
        next_cursor=page.next_cursor,
        as_of=page.as_of,
        source=page.source,
    )


@router.get("/trending", response_model=FeedResponse)
async def trending_feed(
    visibility: list[str] = Query([VISIBILITY_PUBLIC]),
    viewer_id: Optional[str] = Query(None),
    cursor: Optional[str] = Query(None),
    limit: int = Query(settings.feed_page_size, ge=1, le=settings.feed_max_page_size),
    db: AsyncSession = Depends(get_db),
):
    scope = FeedScope.trending(_visibilities(visibility), viewer_id=viewer_id)
    page = await ranking_service.rank(db, scope, cursor, limit)
    return _to_response(page)


@router.get("/following", response_model=FeedResponse)
async def following_feed(
    viewer_id: str = Query(...),
    visibility: list[str] = Query([VISIBILITY_PUBLIC]),
    cursor: Optional[str] = Query(None),
    limit: int = Query(settings.feed_page_size, ge=1, le=settings.feed_max_page_size),
    db: AsyncSession = Depends(get_db),
):
    with tracer.start_as_current_span("following_feed") as span:
        span.set_attribute("user.id", viewer_id)
        if not await db.get(User, viewer_id):
            raise HTTPException(status_code=404, detail="User not found")

        rows = await db.execute(
            select(Follow.followee_id).where(Follow.follower_id == viewer_id)
        )
        followees = [r[0] for r in rows.all()]
        span.set_attribute("following.count", len(followees))

        scope = FeedScope.following(viewer_id, followees, _visibilities(visibility))
        page = await ranking_service.rank(db, scope, cursor, limit)
        return _to_response(page)


@router.get("/users/{user_id}", response_model=FeedResponse)
async def profile_feed(
    user_id: str,
    visibility: list[str] = Query([VISIBILITY_PUBLIC]),
    viewer_id: Optional[str] = Query(None),
    cursor: Optional[str] = Query(None),
    limit: int = Query(settings.feed_page_size, ge=1, le=settings.feed_max_page_size),
    db: AsyncSession = Depends(get_db),
):
    if not await db.get(User, user_id):
        raise HTTPException(status_code=404, detail="User not found")

    scope = FeedScope.profile(user_id, _visibilities(visibility), viewer_id=viewer_id)
    page = await ranking_service.rank(db, scope, cursor, limit)
    return _to_response(page)


@router.get("/featured", response_model=FeedResponse)
async def featured_feed(
    visibility: list[str] = Query([VISIBILITY_PUBLIC]),
    viewer_id: Optional[str] = Query(None),
    cursor: Optional[str] = Query(None),
    limit: int = Query(settings.feed_page_size, ge=1, le=settings.feed_max_page_size),
    db: AsyncSession = Depends(get_db),
):
    scope = FeedScope.featured(_visibilities(visibility), viewer_id=viewer_id)
    page = await ranking_service.rank(db, scope, cursor, limit)
    return _to_response(page)
