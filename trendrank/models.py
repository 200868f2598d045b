"""
SQLAlchemy ORM models.

Tables:
  users                             — user profiles + tier (premium / verified)
  follows                           — social graph edges (follower → followee)
  posts                             — ranked entities + engagement counters
                                      + the cached boost score pair
  boosts                            — user × post engagement events
  post_popular_score_snapshots      — precomputed ranking generations
  hashtag_trending_score_snapshots  — precomputed hashtag trend generations

posts, boosts and follows are owned by the write path; the ranking core only
writes posts.boost_score / posts.boost_score_updated_at and the two snapshot
tables.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Double,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects import mysql
from sqlalchemy.orm import Mapped, mapped_column

from trendrank.database import Base

VISIBILITY_PUBLIC = "public"
VISIBILITY_VERIFIED_ONLY = "verifiedOnly"
VISIBILITY_PREMIUM_ONLY = "premiumOnly"
VISIBILITY_ONLY_ME = "onlyMe"

# Tags a ranked feed may ever surface; onlyMe posts are never ranked.
RANKABLE_VISIBILITIES = (
    VISIBILITY_PUBLIC,
    VISIBILITY_VERIFIED_ONLY,
    VISIBILITY_PREMIUM_ONLY,
)

VERIFIED_NONE = "none"

# Microsecond precision on MySQL/TiDB so cursor timestamps round-trip exactly.
Timestamp = DateTime().with_variant(mysql.DATETIME(fsp=6), "mysql")


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC wall clock; every timestamp column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(255))
    premium: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # 'none' | 'identity' | 'manual'; anything but 'none' counts as verified
    verified_status: Mapped[str] = mapped_column(
        String(20), default=VERIFIED_NONE, nullable=False
    )
    # Plain column (no FK) to avoid a users ↔ posts dependency cycle.
    pinned_post_id: Mapped[Optional[str]] = mapped_column(String(36))
    created_at: Mapped[datetime] = mapped_column(
        Timestamp, server_default=func.now(), nullable=False
    )

    @property
    def is_verified(self) -> bool:
        return (self.verified_status or VERIFIED_NONE) != VERIFIED_NONE


class Follow(Base):
    __tablename__ = "follows"

    follower_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    followee_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    created_at: Mapped[datetime] = mapped_column(
        Timestamp, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_followee", "followee_id"),
    )


class Post(Base):
    __tablename__ = "posts"

    post_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), nullable=False
    )
    content: Mapped[Optional[str]] = mapped_column(Text)
    visibility: Mapped[str] = mapped_column(
        String(20), default=VISIBILITY_PUBLIC, nullable=False
    )
    # Reply chain: parent is the direct parent, root the thread's top post.
    parent_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("posts.post_id")
    )
    root_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("posts.post_id")
    )
    # Already-parsed tags; parsing happens on the write path.
    hashtags: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    boost_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    bookmark_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    comment_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Engagement score cache: both null ("never computed") or both set.
    boost_score: Mapped[Optional[float]] = mapped_column(Double)
    boost_score_updated_at: Mapped[Optional[datetime]] = mapped_column(Timestamp)

    deleted_at: Mapped[Optional[datetime]] = mapped_column(Timestamp)
    created_at: Mapped[datetime] = mapped_column(
        Timestamp, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_posts_created", "created_at"),
        Index("idx_posts_user_created", "user_id", "created_at"),
        Index("idx_posts_parent_created", "parent_id", "created_at"),
        Index("idx_posts_boost_count", "boost_count", "created_at"),
        Index("idx_posts_bookmark_count", "bookmark_count", "created_at"),
        Index("idx_posts_comment_count", "comment_count", "created_at"),
    )


class Boost(Base):
    __tablename__ = "boosts"

    post_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("posts.post_id"), primary_key=True
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    created_at: Mapped[datetime] = mapped_column(
        Timestamp, default=utcnow, nullable=False
    )

    __table_args__ = (
        Index("idx_boosts_user", "user_id"),
    )


class PostPopularScoreSnapshot(Base):
    __tablename__ = "post_popular_score_snapshots"

    as_of: Mapped[datetime] = mapped_column(Timestamp, primary_key=True)
    post_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(Timestamp, nullable=False)
    score: Mapped[float] = mapped_column(Double, nullable=False)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    visibility: Mapped[str] = mapped_column(String(20), nullable=False)
    parent_id: Mapped[Optional[str]] = mapped_column(String(36))
    root_id: Mapped[Optional[str]] = mapped_column(String(36))

    __table_args__ = (
        Index(
            "idx_popular_snapshot_order",
            "as_of", "score", "created_at", "post_id",
        ),
        Index("idx_popular_snapshot_user", "as_of", "user_id"),
        Index("idx_popular_snapshot_visibility", "as_of", "visibility"),
    )


class HashtagTrendingScoreSnapshot(Base):
    __tablename__ = "hashtag_trending_score_snapshots"

    as_of: Mapped[datetime] = mapped_column(Timestamp, primary_key=True)
    visibility: Mapped[str] = mapped_column(String(20), primary_key=True)
    tag: Mapped[str] = mapped_column(String(120), primary_key=True)
    score: Mapped[float] = mapped_column(Double, nullable=False)
    usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        Index("idx_hashtag_snapshot_score", "as_of", "score"),
    )
