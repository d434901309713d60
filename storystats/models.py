"""
SQLAlchemy ORM models.

Tables:
  stories           — story metadata + the canonical engagement counters
  story_stats_cache — last full recompute per story (single writer)
  likes             — user × story like edges
  ratings           — user × story rating (1..5), upsertable
  comments          — comment records
  view_events       — one row per page load, never deduplicated
  users, login_logs — read-only inputs for the admin dashboard
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from storystats.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the DateTime columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    username: Mapped[str] = mapped_column(String(100), nullable=False)
    user_type: Mapped[str] = mapped_column(String(20), default="free", nullable=False)
    country: Mapped[Optional[str]] = mapped_column(String(100))
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_users_active_created", "active", "created_at"),
    )


class Story(Base):
    __tablename__ = "stories"

    story_id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_uuid)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    author: Mapped[Optional[str]] = mapped_column(String(255))
    category: Mapped[Optional[str]] = mapped_column(String(100))
    access_level: Mapped[str] = mapped_column(String(20), default="free", nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, server_default=func.now(), nullable=False
    )

    # Canonical counters: exactly one column per concept.
    view_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    like_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    comment_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Running mean, unrounded on the incremental path; rounded by recompute
    average_rating: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    rating_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        Index("idx_stories_published_created", "published", "created_at"),
        Index("idx_stories_published_category", "published", "category"),
    )


class StoryStatsCache(Base):
    __tablename__ = "story_stats_cache"

    story_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("stories.story_id", ondelete="CASCADE"), primary_key=True
    )
    view_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    like_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    comment_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    average_rating: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    rating_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_calculated: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    calculation_duration_ms: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    schema_version: Mapped[str] = mapped_column(String(20), nullable=False)

    __table_args__ = (
        Index("idx_stats_cache_last_calculated", "last_calculated"),
    )


class Like(Base):
    __tablename__ = "likes"

    story_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("stories.story_id"), primary_key=True
    )
    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_likes_created", "created_at"),
    )


class Rating(Base):
    __tablename__ = "ratings"

    story_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("stories.story_id"), primary_key=True
    )
    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    rating: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        Index("idx_ratings_created", "created_at"),
    )


class Comment(Base):
    __tablename__ = "comments"

    comment_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    story_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("stories.story_id"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_comments_story_created", "story_id", "created_at"),
        Index("idx_comments_created", "created_at"),
    )


class ViewEvent(Base):
    __tablename__ = "view_events"

    view_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    story_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("stories.story_id"), nullable=False
    )
    # User id, or anonymous session id for logged-out readers
    viewer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_views_story_created", "story_id", "created_at"),
        Index("idx_views_created", "created_at"),
    )


class LoginLog(Base):
    __tablename__ = "login_logs"

    log_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    country: Mapped[Optional[str]] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_login_logs_created_success", "created_at", "success"),
    )
