"""
Cache Health Reporting — coverage, staleness and drift of the stats cache.

Used by operators to decide whether to trigger a recompute; never called on
request hot paths. Disagreement between story counters and cache rows is
reported as a warning, never raised.
"""
import logging
from typing import Optional

from sqlalchemy import func, or_, select

from storystats.config import settings
from storystats.database import Database
from storystats.models import Story, StoryStatsCache, utcnow
from storystats.schemas import AggregateTotals, CacheStatus, Inconsistency
from storystats.stats.counters import Rollup, round_rating

logger = logging.getLogger(__name__)


def format_duration(seconds: float) -> str:
    minutes = int(seconds // 60)
    hours = minutes // 60
    days = hours // 24
    if days:
        return f"{days}d {hours % 24}h"
    if hours:
        return f"{hours}h {minutes % 60}m"
    if minutes:
        return f"{minutes}m"
    return f"{int(seconds)}s"


class CacheHealthReporter:
    def __init__(
        self,
        db: Database,
        *,
        stale_after_seconds: Optional[int] = None,
        tolerance: Optional[float] = None,
        sample_size: Optional[int] = None,
        schema_version: Optional[str] = None,
    ) -> None:
        self._db = db
        self.stale_after_seconds = stale_after_seconds or settings.cache_stale_after_seconds
        self.tolerance = settings.inconsistency_tolerance if tolerance is None else tolerance
        self.sample_size = sample_size or settings.inconsistency_sample
        self.schema_version = schema_version or settings.stats_schema_version

    async def cache_status(self) -> CacheStatus:
        cache = StoryStatsCache
        async with self._db.session() as session:
            published = await session.scalar(
                select(func.count()).select_from(Story).where(Story.published.is_(True))
            )
            cached, oldest, newest, views, likes, comments, ratings, avg_rating = (
                await session.execute(
                    select(
                        func.count(),
                        func.min(cache.last_calculated),
                        func.max(cache.last_calculated),
                        func.coalesce(func.sum(cache.view_count), 0),
                        func.coalesce(func.sum(cache.like_count), 0),
                        func.coalesce(func.sum(cache.comment_count), 0),
                        func.coalesce(func.sum(cache.rating_count), 0),
                        func.avg(cache.average_rating),
                    ).select_from(cache)
                    .join(Story, Story.story_id == cache.story_id)
                    .where(Story.published.is_(True))
                )
            ).one()
            versions = (
                await session.scalars(
                    select(cache.schema_version)
                    .join(Story, Story.story_id == cache.story_id)
                    .where(Story.published.is_(True))
                    .distinct()
                    .order_by(cache.schema_version)
                )
            ).all()
            inconsistencies = await self._inconsistencies(session)

        coverage = round_rating(cached * 100 / published) if published else 0.0
        staleness = (utcnow() - oldest).total_seconds() if oldest is not None else None
        status = CacheStatus(
            published_stories=published,
            cached_stories=cached,
            coverage_pct=coverage,
            oldest_calculated=oldest,
            newest_calculated=newest,
            staleness_seconds=staleness,
            is_stale=staleness is not None and staleness > self.stale_after_seconds,
            schema_versions=list(versions),
            aggregate_totals=AggregateTotals(
                total_views=int(views),
                total_likes=int(likes),
                total_comments=int(comments),
                total_ratings=int(ratings),
                average_rating=round_rating(avg_rating),
            ),
            inconsistencies=inconsistencies,
        )
        status.recommendations = self._recommendations(status)
        if status.recommendations:
            logger.warning("Stats cache health: %s", "; ".join(status.recommendations))
        return status

    async def _inconsistencies(self, session) -> list[Inconsistency]:
        cache = StoryStatsCache
        rows = await session.execute(
            select(
                Story.story_id,
                Story.view_count,
                Story.like_count,
                Story.comment_count,
                Story.average_rating,
                Story.rating_count,
                cache.view_count.label("c_view_count"),
                cache.like_count.label("c_like_count"),
                cache.comment_count.label("c_comment_count"),
                cache.average_rating.label("c_average_rating"),
                cache.rating_count.label("c_rating_count"),
            )
            .join(cache, cache.story_id == Story.story_id)
            .where(
                Story.published.is_(True),
                or_(
                    Story.view_count != cache.view_count,
                    Story.like_count != cache.like_count,
                    Story.comment_count != cache.comment_count,
                    Story.rating_count != cache.rating_count,
                    func.abs(Story.average_rating - cache.average_rating) > self.tolerance,
                )
            )
            .order_by(Story.story_id)
            .limit(self.sample_size)
        )
        found = []
        for row in rows:
            cached = Rollup(
                view_count=row.c_view_count,
                like_count=row.c_like_count,
                comment_count=row.c_comment_count,
                average_rating=round_rating(row.c_average_rating),
                rating_count=row.c_rating_count,
            )
            fields = Rollup.from_row(row).differing_fields(cached, self.tolerance)
            if fields:
                found.append(Inconsistency(story_id=row.story_id, fields=fields))
        return found

    def _recommendations(self, status: CacheStatus) -> list[str]:
        notes = []
        if status.cached_stories == 0:
            notes.append("No cached stats found. Run the initial stats recompute.")
        elif status.coverage_pct < 100:
            notes.append(
                f"Cache incomplete: only {status.coverage_pct}% of published stories "
                "have cached stats. Run a recompute."
            )
        if status.is_stale:
            notes.append(
                f"Cache is stale: oldest entry computed "
                f"{format_duration(status.staleness_seconds)} ago. Consider refreshing."
            )
        if status.inconsistencies:
            notes.append(
                f"{len(status.inconsistencies)} stories have counters that disagree "
                "with the cache."
            )
        if any(v != self.schema_version for v in status.schema_versions):
            notes.append(
                f"Cache rows from schema versions {status.schema_versions}; "
                f"current is {self.schema_version}. Run a recompute."
            )
        return notes
