"""
Recomputation Engine — authoritative rebuild of every story's rollups.

For each story in scope, independently:
  1. like_count     = COUNT(likes)
  2. comment_count  = COUNT(comments)
  3. rating_count   = COUNT(ratings), average_rating = round_half_up(mean, 1)
  4. view_count     per the configured ViewCountPolicy
  5. One transaction: mirror the values into the story counters and upsert the
     whole stats-cache row (last_calculated, duration, schema_version).

Stories run concurrently through a bounded worker pool. A failing story is
recorded in the report and never aborts its siblings.

The stats cache has a single writer: this engine. When a coordinator is
supplied (Redis lock), only one batch runs at a time across processes.
"""
import asyncio
import logging
import time
from typing import Optional, Protocol

from opentelemetry import trace
from sqlalchemy import delete, func, select, update

from storystats.config import settings
from storystats.database import Database
from storystats.errors import (
    MalformedRecordError,
    StoryNotFoundError,
    StoryNotPublishedError,
)
from storystats.models import Comment, Like, Rating, Story, StoryStatsCache, ViewEvent, utcnow
from storystats.schemas import RecomputeFailure, RecomputeReport
from storystats.stats.counters import (
    RATING_MAX,
    RATING_MIN,
    Rollup,
    ViewCountPolicy,
    mean_rating,
    parse_policy,
)
from storystats.telemetry import RECOMPUTE_DURATION, RECOMPUTE_STORIES_TOTAL

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

UPDATED = "updated"
UNCHANGED = "unchanged"
FAILED = "failed"


class RecomputeCoordinator(Protocol):
    async def acquire(self) -> bool: ...

    async def release(self) -> None: ...

    async def save_report(self, report: RecomputeReport) -> None: ...


class RecomputationEngine:
    def __init__(
        self,
        db: Database,
        *,
        concurrency: Optional[int] = None,
        view_count_policy: Optional[str] = None,
        schema_version: Optional[str] = None,
        failure_sample: Optional[int] = None,
        coordinator: Optional[RecomputeCoordinator] = None,
    ) -> None:
        self._db = db
        self.concurrency = max(1, concurrency or settings.recompute_concurrency)
        self.view_count_policy = parse_policy(view_count_policy or settings.view_count_policy)
        self.schema_version = schema_version or settings.stats_schema_version
        self.failure_sample = (
            settings.report_failure_sample if failure_sample is None else failure_sample
        )
        self._coordinator = coordinator

    async def recompute_all(self, scope: Optional[list[str]] = None) -> RecomputeReport:
        """
        Rebuild rollups for every published story, or for the ids in `scope`.

        Ids in `scope` that don't exist or aren't published are reported as
        failures. A full pass also drops cache rows of unpublished stories.
        """
        report = RecomputeReport(
            started_at=utcnow(),
            schema_version=self.schema_version,
            view_count_policy=self.view_count_policy.value,
        )

        if self._coordinator is not None and not await self._coordinator.acquire():
            logger.info("Recompute skipped — another batch holds the lock")
            report.skipped = True
            report.finished_at = utcnow()
            return report

        t0 = time.perf_counter()
        try:
            with tracer.start_as_current_span("recompute_all") as span:
                story_ids = await self._resolve_scope(scope)
                span.set_attribute("recompute.stories", len(story_ids))
                span.set_attribute("recompute.policy", self.view_count_policy.value)
                logger.info(
                    "Recompute starting: %d stories (policy=%s, workers=%d)",
                    len(story_ids), self.view_count_policy.value, self.concurrency,
                )

                semaphore = asyncio.Semaphore(self.concurrency)
                outcomes = await asyncio.gather(
                    *[self._run_one(story_id, semaphore) for story_id in story_ids]
                )

                for story_id, outcome, error in outcomes:
                    report.processed += 1
                    RECOMPUTE_STORIES_TOTAL.labels(outcome=outcome).inc()
                    if outcome == UPDATED:
                        report.updated += 1
                    elif outcome == UNCHANGED:
                        report.unchanged += 1
                    else:
                        report.failed += 1
                        if len(report.failures) < self.failure_sample:
                            report.failures.append(
                                RecomputeFailure(story_id=story_id, error=error)
                            )

                if scope is None:
                    await self._purge_unpublished()

                span.set_attribute("recompute.updated", report.updated)
                span.set_attribute("recompute.failed", report.failed)
        finally:
            elapsed = time.perf_counter() - t0
            RECOMPUTE_DURATION.observe(elapsed)
            report.duration_ms = round(elapsed * 1000, 2)
            report.finished_at = utcnow()
            if self._coordinator is not None:
                await self._coordinator.release()

        logger.info(
            "Recompute complete: processed=%d updated=%d unchanged=%d failed=%d (%.1fms)",
            report.processed, report.updated, report.unchanged, report.failed,
            report.duration_ms,
        )
        if self._coordinator is not None:
            await self._coordinator.save_report(report)
        return report

    async def _resolve_scope(self, scope: Optional[list[str]]) -> list[str]:
        if scope is not None:
            # Preserve caller order, drop duplicates
            return list(dict.fromkeys(scope))
        async with self._db.session() as session:
            rows = await session.execute(
                select(Story.story_id)
                .where(Story.published.is_(True))
                .order_by(Story.story_id)
            )
            return [r[0] for r in rows.all()]

    async def _purge_unpublished(self) -> None:
        async with self._db.session() as session:
            result = await session.execute(
                delete(StoryStatsCache)
                .where(
                    StoryStatsCache.story_id.in_(
                        select(Story.story_id).where(Story.published.is_(False))
                    )
                )
                .execution_options(synchronize_session=False)
            )
        if result.rowcount:
            logger.info("Dropped %d cache rows of unpublished stories", result.rowcount)

    async def _run_one(
        self, story_id: str, semaphore: asyncio.Semaphore
    ) -> tuple[str, str, Optional[str]]:
        async with semaphore:
            try:
                changed = await self.recompute_story(story_id)
            except (StoryNotFoundError, StoryNotPublishedError, MalformedRecordError) as exc:
                logger.warning("Recompute failed for story %s: %s", story_id, exc)
                return story_id, FAILED, str(exc)
            except Exception as exc:
                logger.exception("Recompute error for story %s", story_id)
                return story_id, FAILED, f"{type(exc).__name__}: {exc}"
        return story_id, UPDATED if changed else UNCHANGED, None

    async def recompute_story(self, story_id: str) -> bool:
        """Recompute one story. Returns True if its rollup changed."""
        t0 = time.perf_counter()
        async with self._db.session() as session:
            story = await session.get(Story, story_id)
            if story is None:
                raise StoryNotFoundError(story_id)
            if not story.published:
                raise StoryNotPublishedError(story_id)

            like_count = await session.scalar(
                select(func.count()).select_from(Like).where(Like.story_id == story_id)
            )
            comment_count = await session.scalar(
                select(func.count()).select_from(Comment).where(Comment.story_id == story_id)
            )
            rating_count, rating_total, lowest, highest = (
                await session.execute(
                    select(
                        func.count(Rating.rating),
                        func.sum(Rating.rating),
                        func.min(Rating.rating),
                        func.max(Rating.rating),
                    ).where(Rating.story_id == story_id)
                )
            ).one()
            if rating_count and (lowest < RATING_MIN or highest > RATING_MAX):
                raise MalformedRecordError(
                    f"rating outside {RATING_MIN}..{RATING_MAX} "
                    f"(min={lowest}, max={highest})"
                )
            view_count = await self._view_count(session, story)

            rollup = Rollup(
                view_count=int(view_count or 0),
                like_count=int(like_count or 0),
                comment_count=int(comment_count or 0),
                average_rating=mean_rating(rating_total or 0, int(rating_count or 0)),
                rating_count=int(rating_count or 0),
            )

            cached = await session.get(StoryStatsCache, story_id)
            changed = (
                cached is None
                or Rollup.from_row(cached) != rollup
                or cached.schema_version != self.schema_version
            )

            # Mirror into the story counters: plain assignment of the derived
            # columns in one statement, never a whole-row replace. Under the
            # counter policy view_count is the source, so it is not written back.
            derived = rollup.as_dict()
            if self.view_count_policy is ViewCountPolicy.COUNTER:
                derived.pop("view_count")
            await session.execute(
                update(Story)
                .where(Story.story_id == story_id)
                .values(**derived)
                .execution_options(synchronize_session=False)
            )

            duration_ms = round((time.perf_counter() - t0) * 1000, 3)
            values = dict(
                rollup.as_dict(),
                last_calculated=utcnow(),
                calculation_duration_ms=duration_ms,
                schema_version=self.schema_version,
            )
            if cached is None:
                session.add(StoryStatsCache(story_id=story_id, **values))
            else:
                for name, value in values.items():
                    setattr(cached, name, value)

        logger.debug("Recomputed story %s: %s (changed=%s)", story_id, rollup, changed)
        return changed

    async def _view_count(self, session, story: Story) -> int:
        policy = self.view_count_policy
        if policy is ViewCountPolicy.COUNTER:
            return story.view_count
        if policy is ViewCountPolicy.EVENTS:
            return await session.scalar(
                select(func.count())
                .select_from(ViewEvent)
                .where(ViewEvent.story_id == story.story_id)
            )
        per_day = (
            select(ViewEvent.viewer_id, func.date(ViewEvent.created_at).label("day"))
            .where(ViewEvent.story_id == story.story_id)
            .distinct()
            .subquery()
        )
        return await session.scalar(select(func.count()).select_from(per_day))
