"""
Site-wide dashboard totals over a time window.

Reads the literal event history for the requested window: neither the story
counters nor the stats cache are consulted. Each metric is an independent
aggregation in its own session; all of them are issued concurrently and
joined with asyncio.gather. A metric that times out or errors reports its zero
value and is listed in `degraded_metrics`; the dashboard itself never fails.
"""
import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from opentelemetry import trace
from sqlalchemy import case, distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from storystats.config import settings
from storystats.database import Database
from storystats.models import Comment, Like, LoginLog, Rating, Story, User, ViewEvent, utcnow
from storystats.schemas import (
    Bucket,
    DashboardMetadata,
    DashboardStats,
    DashboardWindow,
    EngagementTotals,
    LoginTotals,
    ReadingTotals,
    StoryTotals,
    TopStory,
    TrendingTotals,
    UserTotals,
)
from storystats.stats.counters import round_rating
from storystats.telemetry import DASHBOARD_DEGRADED_TOTAL, QUERY_LATENCY

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

WINDOW_DAYS = {
    DashboardWindow.LAST_WEEK: 7,
    DashboardWindow.LAST_MONTH: 30,
}

Query = Callable[[AsyncSession, datetime], Awaitable[Any]]


def window_start(window: DashboardWindow, now: Optional[datetime] = None) -> datetime:
    return (now or utcnow()) - timedelta(days=WINDOW_DAYS[DashboardWindow(window)])


class DashboardAggregator:
    def __init__(
        self,
        db: Database,
        *,
        timeout: Optional[float] = None,
        top_limit: Optional[int] = None,
        top_rated_min_ratings: Optional[int] = None,
    ) -> None:
        self._db = db
        self.timeout = timeout or settings.dashboard_query_timeout
        self.top_limit = top_limit or settings.top_list_limit
        self.top_rated_min_ratings = (
            settings.top_rated_min_ratings
            if top_rated_min_ratings is None
            else top_rated_min_ratings
        )

    async def get_dashboard_totals(
        self, window: DashboardWindow = DashboardWindow.LAST_WEEK
    ) -> DashboardStats:
        window = DashboardWindow(window)
        t0 = time.perf_counter()
        now = utcnow()
        start = window_start(window, now)

        # name → (query, zero value)
        metrics: dict[str, tuple[Query, Any]] = {
            "total_users": (self._total_users, 0),
            "new_users": (self._new_users, 0),
            "active_users": (self._active_users, 0),
            "users_by_type": (self._users_by_type, {}),
            "total_stories": (self._total_stories, 0),
            "new_stories": (self._new_stories, 0),
            "stories_by_category": (self._stories_by_category, []),
            "reads": (self._reads, 0),
            "most_read": (self._most_read, []),
            "total_likes": (self._count_all(Like), 0),
            "total_comments": (self._count_all(Comment), 0),
            "total_ratings": (self._count_all(Rating), 0),
            "likes": (self._count_since(Like), 0),
            "comments": (self._count_since(Comment), 0),
            "ratings": (self._count_since(Rating), 0),
            "most_liked": (self._most_by_rows(Like), []),
            "most_commented": (self._most_by_rows(Comment), []),
            "top_rated": (self._top_rated, []),
            "logins": (self._logins, 0),
            "login_success_rate": (self._login_success_rate, 0.0),
            "logins_by_country": (self._logins_by_country, []),
            "popular_categories": (self._popular_categories, []),
        }

        degraded: list[str] = []
        with tracer.start_as_current_span("dashboard_totals") as span:
            span.set_attribute("dashboard.window", window.value)
            values = await asyncio.gather(
                *[
                    self._run_metric(name, query, default, start, degraded)
                    for name, (query, default) in metrics.items()
                ]
            )
            span.set_attribute("dashboard.degraded", len(degraded))
        r = dict(zip(metrics, values))

        query_time = time.perf_counter() - t0
        QUERY_LATENCY.labels(path="dashboard").observe(query_time)
        logger.info(
            "Dashboard totals (%s) computed in %.1fms, %d degraded",
            window.value, query_time * 1000, len(degraded),
        )

        return DashboardStats(
            users=UserTotals(
                total=r["total_users"],
                new=r["new_users"],
                active=r["active_users"],
                by_type=r["users_by_type"],
            ),
            stories=StoryTotals(
                total=r["total_stories"],
                new=r["new_stories"],
                by_category=r["stories_by_category"],
            ),
            reading=ReadingTotals(reads=r["reads"], most_read=r["most_read"]),
            engagement=EngagementTotals(
                total_likes=r["total_likes"],
                total_comments=r["total_comments"],
                total_ratings=r["total_ratings"],
                likes=r["likes"],
                comments=r["comments"],
                ratings=r["ratings"],
                most_liked=r["most_liked"],
                most_commented=r["most_commented"],
                top_rated=r["top_rated"],
            ),
            logins=LoginTotals(
                logins=r["logins"],
                success_rate=r["login_success_rate"],
                by_country=r["logins_by_country"],
            ),
            trending=TrendingTotals(popular_categories=r["popular_categories"]),
            metadata=DashboardMetadata(
                window=window,
                window_start=start,
                generated_at=now,
                query_time_ms=round(query_time * 1000, 2),
            ),
            degraded_metrics=sorted(degraded),
        )

    async def _run_metric(
        self,
        name: str,
        query: Query,
        default: Any,
        start: datetime,
        degraded: list[str],
    ) -> Any:
        async def _in_session():
            async with self._db.session() as session:
                return await query(session, start)

        try:
            return await asyncio.wait_for(_in_session(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Dashboard metric %s timed out after %.1fs", name, self.timeout)
        except Exception as exc:
            logger.warning("Dashboard metric %s failed: %s", name, exc)
        degraded.append(name)
        DASHBOARD_DEGRADED_TOTAL.labels(metric=name).inc()
        return default

    # ── users ──────────────────────────────────────────────────────────────

    async def _total_users(self, session: AsyncSession, start: datetime) -> int:
        return await session.scalar(
            select(func.count()).select_from(User).where(User.active.is_(True))
        )

    async def _new_users(self, session: AsyncSession, start: datetime) -> int:
        return await session.scalar(
            select(func.count())
            .select_from(User)
            .where(User.active.is_(True), User.created_at >= start)
        )

    async def _active_users(self, session: AsyncSession, start: datetime) -> int:
        return await session.scalar(
            select(func.count(distinct(LoginLog.user_id))).where(
                LoginLog.success.is_(True), LoginLog.created_at >= start
            )
        )

    async def _users_by_type(self, session: AsyncSession, start: datetime) -> dict[str, int]:
        rows = await session.execute(
            select(User.user_type, func.count())
            .where(User.active.is_(True))
            .group_by(User.user_type)
        )
        return {(key or "unknown"): count for key, count in rows.all()}

    # ── stories ────────────────────────────────────────────────────────────

    async def _total_stories(self, session: AsyncSession, start: datetime) -> int:
        return await session.scalar(
            select(func.count()).select_from(Story).where(Story.published.is_(True))
        )

    async def _new_stories(self, session: AsyncSession, start: datetime) -> int:
        return await session.scalar(
            select(func.count())
            .select_from(Story)
            .where(Story.published.is_(True), Story.created_at >= start)
        )

    async def _stories_by_category(self, session: AsyncSession, start: datetime) -> list[Bucket]:
        count = func.count().label("count")
        rows = await session.execute(
            select(Story.category, count)
            .where(Story.published.is_(True))
            .group_by(Story.category)
            .order_by(count.desc(), Story.category)
        )
        return _buckets(rows.all())

    # ── reading / engagement ───────────────────────────────────────────────

    async def _reads(self, session: AsyncSession, start: datetime) -> int:
        return await session.scalar(
            select(func.count()).select_from(ViewEvent).where(ViewEvent.created_at >= start)
        )

    async def _most_read(self, session: AsyncSession, start: datetime) -> list[TopStory]:
        return await self._most_by_rows(ViewEvent)(session, start)

    def _count_all(self, model) -> Query:
        async def query(session: AsyncSession, start: datetime) -> int:
            return await session.scalar(select(func.count()).select_from(model))

        return query

    def _count_since(self, model) -> Query:
        async def query(session: AsyncSession, start: datetime) -> int:
            return await session.scalar(
                select(func.count()).select_from(model).where(model.created_at >= start)
            )

        return query

    def _most_by_rows(self, model) -> Query:
        """Top published stories by number of `model` rows in the window."""

        async def query(session: AsyncSession, start: datetime) -> list[TopStory]:
            value = func.count().label("value")
            rows = await session.execute(
                select(model.story_id, Story.title, value)
                .join(Story, Story.story_id == model.story_id)
                .where(Story.published.is_(True), model.created_at >= start)
                .group_by(model.story_id, Story.title)
                .order_by(value.desc(), model.story_id)
                .limit(self.top_limit)
            )
            return [
                TopStory(story_id=story_id, title=title, value=count)
                for story_id, title, count in rows.all()
            ]

        return query

    async def _top_rated(self, session: AsyncSession, start: datetime) -> list[TopStory]:
        average = func.avg(Rating.rating).label("value")
        rows = await session.execute(
            select(Rating.story_id, Story.title, average)
            .join(Story, Story.story_id == Rating.story_id)
            .where(Story.published.is_(True), Rating.created_at >= start)
            .group_by(Rating.story_id, Story.title)
            .having(func.count() >= self.top_rated_min_ratings)
            .order_by(average.desc(), Rating.story_id)
            .limit(self.top_limit)
        )
        return [
            TopStory(story_id=story_id, title=title, value=round_rating(avg))
            for story_id, title, avg in rows.all()
        ]

    # ── logins ─────────────────────────────────────────────────────────────

    async def _logins(self, session: AsyncSession, start: datetime) -> int:
        return await session.scalar(
            select(func.count()).select_from(LoginLog).where(LoginLog.created_at >= start)
        )

    async def _login_success_rate(self, session: AsyncSession, start: datetime) -> float:
        total, successful = (
            await session.execute(
                select(
                    func.count(),
                    func.sum(case((LoginLog.success.is_(True), 1), else_=0)),
                ).where(LoginLog.created_at >= start)
            )
        ).one()
        if not total:
            return 0.0
        return round_rating((successful or 0) * 100 / total)

    async def _logins_by_country(self, session: AsyncSession, start: datetime) -> list[Bucket]:
        count = func.count().label("count")
        rows = await session.execute(
            select(LoginLog.country, count)
            .where(LoginLog.created_at >= start)
            .group_by(LoginLog.country)
            .order_by(count.desc(), LoginLog.country)
            .limit(self.top_limit)
        )
        return _buckets(rows.all())

    # ── trending ───────────────────────────────────────────────────────────

    async def _popular_categories(self, session: AsyncSession, start: datetime) -> list[Bucket]:
        count = func.count().label("count")
        rows = await session.execute(
            select(Story.category, count)
            .select_from(ViewEvent)
            .join(Story, Story.story_id == ViewEvent.story_id)
            .where(Story.published.is_(True), ViewEvent.created_at >= start)
            .group_by(Story.category)
            .order_by(count.desc(), Story.category)
            .limit(self.top_limit)
        )
        return _buckets(rows.all())


def _buckets(rows) -> list[Bucket]:
    return [Bucket(key=key or "unknown", count=count) for key, count in rows]
