"""
Post engagement endpoints:
  POST   /posts/{id}/invalidate-score — drop the cached boost score
  POST   /posts/{id}/boost            — boost a post (idempotent)
  DELETE /posts/{id}/boost            — remove a boost (idempotent)

The boost endpoints are the reference write path: counter change and cache
invalidation commit together.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Response, status
from opentelemetry import trace
from sqlalchemy.ext.asyncio import AsyncSession

from trendrank.database import get_db
from trendrank.models import Post, User
from trendrank.ranking import score_cache
from trendrank.ranking.engagement import record_boost, remove_boost
from trendrank.schemas import BoostRequest, BoostResponse

logger = logging.getLogger(__name__)
router = APIRouter()
tracer = trace.get_tracer(__name__)


async def _get_live_post(db: AsyncSession, post_id: str) -> Post:
    post = await db.get(Post, post_id)
    if not post or post.deleted_at is not None:
        raise HTTPException(status_code=404, detail="Post not found")
    return post


@router.post("/{post_id}/invalidate-score", status_code=status.HTTP_204_NO_CONTENT)
async def invalidate_score(post_id: str, db: AsyncSession = Depends(get_db)):
    """Called by write paths after they change an engagement counter."""
    with tracer.start_as_current_span("invalidate_score"):
        if not await db.get(Post, post_id):
            raise HTTPException(status_code=404, detail="Post not found")
        await score_cache.invalidate(db, post_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{post_id}/boost", response_model=BoostResponse)
async def boost_post(post_id: str, body: BoostRequest, db: AsyncSession = Depends(get_db)):
    with tracer.start_as_current_span("boost_post") as span:
        span.set_attribute("post.id", post_id)
        await _get_live_post(db, post_id)
        if not await db.get(User, body.user_id):
            raise HTTPException(status_code=404, detail="User not found")

        await record_boost(db, post_id, body.user_id)
        post = await db.get(Post, post_id, populate_existing=True)
        return BoostResponse(post_id=post_id, boost_count=post.boost_count, active=True)


@router.delete("/{post_id}/boost", response_model=BoostResponse)
async def unboost_post(post_id: str, body: BoostRequest, db: AsyncSession = Depends(get_db)):
    with tracer.start_as_current_span("unboost_post") as span:
        span.set_attribute("post.id", post_id)
        await _get_live_post(db, post_id)

        await remove_boost(db, post_id, body.user_id)
        post = await db.get(Post, post_id, populate_existing=True)
        return BoostResponse(post_id=post_id, boost_count=post.boost_count, active=False)
