"""
Pydantic request / response schemas for the API layer.
Kept separate from ORM models to avoid coupling transport to storage.
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel


# ──────────────────────────── Feed ────────────────────────────────────────

class FeedPost(BaseModel):
    """A hydrated, ranked post returned in a feed page."""
    post_id: str
    user_id: str
    content: Optional[str]
    visibility: str
    parent_id: Optional[str]
    hashtags: list[str]
    boost_count: int
    bookmark_count: int
    comment_count: int
    created_at: datetime
    # Popularity score at the page's as_of
    score: float


class FeedResponse(BaseModel):
    items: list[FeedPost]
    # Opaque; pass back unchanged to get the next page. Null on the last page.
    next_cursor: Optional[str]
    as_of: Optional[datetime]
    source: str   # 'snapshot' | 'live'


# ──────────────────────────── Hashtags ────────────────────────────────────

class TrendingHashtag(BaseModel):
    tag: str
    # Summed across the requested visibilities
    score: float
    usage_count: int


class TrendingHashtagsResponse(BaseModel):
    items: list[TrendingHashtag]
    next_cursor: Optional[str]
    as_of: Optional[datetime]


# ──────────────────────────── Posts ───────────────────────────────────────

class BoostRequest(BaseModel):
    user_id: str


class BoostResponse(BaseModel):
    post_id: str
    boost_count: int
    # Whether the caller's boost exists after the request
    active: bool


# ──────────────────────────── Jobs ────────────────────────────────────────

class SnapshotTriggerResponse(BaseModel):
    started: bool
    completed: bool
    written: Optional[bool] = None


class SnapshotStatusResponse(BaseModel):
    running: bool
    latest_as_of: Optional[datetime]
