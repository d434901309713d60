"""
Aggregation Query Layer — per-story and listing read paths.

  get_story_stats    story page; story counters, optional live comment count
  get_listing_stats  N stories in at most two statements; stats cache joined
                     over counters, falling back to counters on timeout/error

The dashboard path lives in stats/dashboard.py since it never reads counters.
"""
import asyncio
import logging
import time
from typing import Iterable, Optional

from sqlalchemy import func, select

from storystats.config import settings
from storystats.database import Database
from storystats.errors import StoryNotFoundError
from storystats.models import Comment, Story, StoryStatsCache
from storystats.schemas import ListingSource, ListingStats, StoryStats
from storystats.stats.counters import Rollup, round_rating
from storystats.telemetry import LISTING_FALLBACK_TOTAL, QUERY_LATENCY

logger = logging.getLogger(__name__)

_COUNTER_COLUMNS = (
    Story.story_id,
    Story.view_count,
    Story.like_count,
    Story.comment_count,
    Story.average_rating,
    Story.rating_count,
)


class StatsQueryService:
    def __init__(
        self,
        db: Database,
        *,
        story_timeout: Optional[float] = None,
        listing_timeout: Optional[float] = None,
    ) -> None:
        self._db = db
        self.story_timeout = story_timeout or settings.story_query_timeout
        self.listing_timeout = listing_timeout or settings.listing_query_timeout

    # ── single story ───────────────────────────────────────────────────────

    async def get_story_stats(self, story_id: str, live_comments: bool = False) -> StoryStats:
        t0 = time.perf_counter()
        async with self._db.session() as session:
            row = (
                await session.execute(
                    select(*_COUNTER_COLUMNS).where(Story.story_id == story_id)
                )
            ).one_or_none()
            if row is None:
                raise StoryNotFoundError(story_id)
            stats = Rollup.from_row(row).to_stats(story_id)

            if live_comments:
                try:
                    stats.comment_count = await asyncio.wait_for(
                        session.scalar(
                            select(func.count())
                            .select_from(Comment)
                            .where(Comment.story_id == story_id)
                        ),
                        timeout=self.story_timeout,
                    )
                except asyncio.TimeoutError:
                    logger.warning(
                        "Live comment count timed out for story %s — serving counter",
                        story_id,
                    )
                except Exception as exc:
                    logger.warning(
                        "Live comment count failed for story %s: %s — serving counter",
                        story_id, exc,
                    )

        QUERY_LATENCY.labels(path="story").observe(time.perf_counter() - t0)
        return stats

    # ── listing ────────────────────────────────────────────────────────────

    async def get_listing_stats(
        self, story_ids: Iterable[str], use_cache: bool = True
    ) -> ListingStats:
        """
        Stats for a page of stories, keyed by story id.

        Ids unknown to the stories table are omitted. A story without a cache
        row is served from its counters, so every returned entry is complete.
        """
        ids = list(dict.fromkeys(story_ids))
        if not ids:
            return ListingStats(
                stats={},
                source=ListingSource.CACHE if use_cache else ListingSource.COUNTERS,
            )

        t0 = time.perf_counter()
        try:
            if not use_cache:
                return ListingStats(
                    stats=await self._counter_stats(ids), source=ListingSource.COUNTERS
                )
            try:
                stats = await asyncio.wait_for(
                    self._cached_stats(ids), timeout=self.listing_timeout
                )
                return ListingStats(stats=stats, source=ListingSource.CACHE)
            except asyncio.TimeoutError:
                logger.warning(
                    "Stats cache lookup timed out for %d stories — serving counters", len(ids)
                )
            except Exception as exc:
                logger.warning(
                    "Stats cache lookup failed for %d stories: %s — serving counters",
                    len(ids), exc,
                )
            LISTING_FALLBACK_TOTAL.inc()
            return ListingStats(
                stats=await self._counter_stats(ids),
                source=ListingSource.COUNTERS,
                degraded=True,
            )
        finally:
            QUERY_LATENCY.labels(path="listing").observe(time.perf_counter() - t0)

    async def _counter_stats(self, ids: list[str]) -> dict[str, StoryStats]:
        async with self._db.session() as session:
            rows = await session.execute(
                select(*_COUNTER_COLUMNS).where(Story.story_id.in_(ids))
            )
            found = {row.story_id: Rollup.from_row(row).to_stats(row.story_id) for row in rows}
        return {sid: found[sid] for sid in ids if sid in found}

    async def _cached_stats(self, ids: list[str]) -> dict[str, StoryStats]:
        cache = StoryStatsCache
        stmt = (
            select(
                *_COUNTER_COLUMNS,
                cache.story_id.label("cached_id"),
                cache.view_count.label("c_view_count"),
                cache.like_count.label("c_like_count"),
                cache.comment_count.label("c_comment_count"),
                cache.average_rating.label("c_average_rating"),
                cache.rating_count.label("c_rating_count"),
                cache.last_calculated.label("c_last_calculated"),
            )
            .outerjoin(cache, cache.story_id == Story.story_id)
            .where(Story.story_id.in_(ids))
        )
        found: dict[str, StoryStats] = {}
        async with self._db.session() as session:
            for row in await session.execute(stmt):
                if row.cached_id is None:
                    found[row.story_id] = Rollup.from_row(row).to_stats(row.story_id)
                else:
                    found[row.story_id] = Rollup(
                        view_count=row.c_view_count,
                        like_count=row.c_like_count,
                        comment_count=row.c_comment_count,
                        average_rating=round_rating(row.c_average_rating),
                        rating_count=row.c_rating_count,
                    ).to_stats(row.story_id, last_calculated=row.c_last_calculated)
        return {sid: found[sid] for sid in ids if sid in found}
