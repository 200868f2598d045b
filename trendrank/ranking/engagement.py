"""
Boost write path.

Creating or deleting a boost changes boost_count and nulls the cached boost
score in the caller's transaction, so a reader can never see the new counter
next to a score computed from the old event set.
"""
import logging

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from trendrank.models import Boost, Post, utcnow

logger = logging.getLogger(__name__)


async def record_boost(db: AsyncSession, post_id: str, user_id: str) -> bool:
    """Boost a post (idempotent). Returns True if a new boost was created."""
    existing = await db.execute(
        select(Boost.post_id).where(Boost.post_id == post_id, Boost.user_id == user_id)
    )
    if existing.first() is not None:
        return False

    db.add(Boost(post_id=post_id, user_id=user_id, created_at=utcnow()))
    await db.flush()
    await db.execute(
        update(Post)
        .where(Post.post_id == post_id)
        .values(
            boost_count=Post.boost_count + 1,
            boost_score=None,
            boost_score_updated_at=None,
        )
        .execution_options(synchronize_session="fetch")
    )
    logger.info("Post %s boosted by %s", post_id, user_id)
    return True


async def remove_boost(db: AsyncSession, post_id: str, user_id: str) -> bool:
    """Remove a boost (idempotent). Returns True if a boost was deleted."""
    result = await db.execute(
        delete(Boost)
        .where(Boost.post_id == post_id, Boost.user_id == user_id)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    await db.execute(
        update(Post)
        .where(Post.post_id == post_id)
        .values(
            boost_count=Post.boost_count - 1,
            boost_score=None,
            boost_score_updated_at=None,
        )
        .execution_options(synchronize_session="fetch")
    )
    logger.info("Post %s unboosted by %s", post_id, user_id)
    return True
