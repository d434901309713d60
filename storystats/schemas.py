"""
Pydantic request / response schemas for the API layer.
Kept separate from ORM models to avoid coupling transport to storage.
"""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


# ──────────────────────────── Story stats ─────────────────────────────────

class StoryStats(BaseModel):
    """Engagement numbers for one story. Every field is always present."""
    story_id: str
    view_count: int = 0
    like_count: int = 0
    comment_count: int = 0
    average_rating: float = 0.0
    rating_count: int = 0
    # Set when the numbers came from the stats cache
    last_calculated: Optional[datetime] = None


class ListingSource(str, Enum):
    CACHE = "cache"
    COUNTERS = "counters"


class ListingStats(BaseModel):
    stats: dict[str, StoryStats]
    source: ListingSource
    # True when the cache path was requested but counters were served instead
    degraded: bool = False


# ──────────────────────────── Interactions ────────────────────────────────

class LikeRequest(BaseModel):
    user_id: str


class RatingRequest(BaseModel):
    user_id: str
    rating: int = Field(..., ge=1, le=5)


class CommentCreate(BaseModel):
    user_id: str
    content: str = Field(..., min_length=1)


class CommentResponse(BaseModel):
    comment_id: str
    story_id: str
    user_id: str
    content: str
    created_at: datetime
    counters_updated: bool = True

    class Config:
        from_attributes = True


class ViewRequest(BaseModel):
    # User id, or the anonymous session id for logged-out readers
    viewer_id: str


class InteractionResult(BaseModel):
    story_id: str
    # False when the counter update was skipped; the next recompute heals it
    counters_updated: bool


# ──────────────────────────── Recompute ───────────────────────────────────

class RecomputeRequest(BaseModel):
    # None → every published story
    story_ids: Optional[list[str]] = None


class RecomputeFailure(BaseModel):
    story_id: str
    error: str


class RecomputeReport(BaseModel):
    processed: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    failures: list[RecomputeFailure] = []
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_ms: float = 0.0
    schema_version: str
    view_count_policy: str
    # True when another batch held the recompute lock
    skipped: bool = False


# ──────────────────────────── Dashboard ───────────────────────────────────

class DashboardWindow(str, Enum):
    LAST_WEEK = "last_week"
    LAST_MONTH = "last_month"


class TopStory(BaseModel):
    story_id: str
    title: Optional[str] = None
    value: float


class Bucket(BaseModel):
    key: str
    count: int


class UserTotals(BaseModel):
    total: int = 0
    new: int = 0
    active: int = 0
    by_type: dict[str, int] = {}


class StoryTotals(BaseModel):
    total: int = 0
    new: int = 0
    by_category: list[Bucket] = []


class ReadingTotals(BaseModel):
    reads: int = 0
    most_read: list[TopStory] = []


class EngagementTotals(BaseModel):
    total_likes: int = 0
    total_comments: int = 0
    total_ratings: int = 0
    likes: int = 0
    comments: int = 0
    ratings: int = 0
    most_liked: list[TopStory] = []
    most_commented: list[TopStory] = []
    top_rated: list[TopStory] = []


class LoginTotals(BaseModel):
    logins: int = 0
    success_rate: float = 0.0
    by_country: list[Bucket] = []


class TrendingTotals(BaseModel):
    popular_categories: list[Bucket] = []


class DashboardMetadata(BaseModel):
    window: DashboardWindow
    window_start: datetime
    generated_at: datetime
    query_time_ms: float


class DashboardStats(BaseModel):
    users: UserTotals
    stories: StoryTotals
    reading: ReadingTotals
    engagement: EngagementTotals
    logins: LoginTotals
    trending: TrendingTotals
    metadata: DashboardMetadata
    # Sub-aggregations that timed out or failed and report their zero value
    degraded_metrics: list[str] = []


# ──────────────────────────── Cache health ────────────────────────────────

class AggregateTotals(BaseModel):
    total_views: int = 0
    total_likes: int = 0
    total_comments: int = 0
    total_ratings: int = 0
    average_rating: float = 0.0


class Inconsistency(BaseModel):
    story_id: str
    fields: list[str]


class CacheStatus(BaseModel):
    published_stories: int
    cached_stories: int
    coverage_pct: float
    oldest_calculated: Optional[datetime] = None
    newest_calculated: Optional[datetime] = None
    staleness_seconds: Optional[float] = None
    is_stale: bool = False
    schema_versions: list[str] = []
    aggregate_totals: AggregateTotals
    inconsistencies: list[Inconsistency] = []
    recommendations: list[str] = []
