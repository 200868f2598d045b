"""
Hashtag endpoints:
  GET /hashtags/trending — trending tags from the latest hashtag generation

A cursor from an older generation restarts the list at the top.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from trendrank.config import settings
from trendrank.database import get_db
from trendrank.models import RANKABLE_VISIBILITIES, VISIBILITY_ONLY_ME, VISIBILITY_PUBLIC
from trendrank.ranking.hashtags import trending_tags
from trendrank.schemas import TrendingHashtag, TrendingHashtagsResponse

logger = logging.getLogger(__name__)
router = APIRouter()

ALLOWED_VISIBILITY_PARAMS = set(RANKABLE_VISIBILITIES) | {VISIBILITY_ONLY_ME}


@router.get("/trending", response_model=TrendingHashtagsResponse)
async def trending_hashtags(
    visibility: list[str] = Query([VISIBILITY_PUBLIC]),
    cursor: Optional[str] = Query(None),
    limit: int = Query(
        settings.trending_tags_page_size, ge=1, le=settings.trending_tags_max_page_size
    ),
    db: AsyncSession = Depends(get_db),
):
    unknown = [v for v in visibility if v not in ALLOWED_VISIBILITY_PARAMS]
    if unknown:
        raise HTTPException(status_code=422, detail=f"Unknown visibility: {', '.join(unknown)}")

    page = await trending_tags(db, visibility, limit, cursor)
    return TrendingHashtagsResponse(
        items=[
            TrendingHashtag(tag=t.tag, score=t.score, usage_count=t.usage_count)
            for t in page.tags
        ],
        next_cursor=page.next_cursor,
        as_of=page.as_of,
    )
