"""
Incremental Updaters — O(1) counter maintenance on the interaction hot path.

Every method issues exactly one UPDATE against the stories row, with the new
value computed by the database from the current one (col = col + 1). Two users
liking the same story concurrently therefore can't lose an increment.

Updaters never touch the stats cache and never raise: the interaction record
is already committed and remains the source of truth, so a failed update is
logged, counted, and left for the next recompute pass to heal.
"""
import logging
from typing import Optional

from opentelemetry import trace
from sqlalchemy import case, update

from storystats.database import Database
from storystats.models import Story
from storystats.telemetry import COUNTER_UPDATE_ERRORS_TOTAL

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def _increment(column):
    return column + 1


def _decrement(column):
    # Clamp inside the statement so concurrent decrements never go negative
    return case((column > 0, column - 1), else_=0)


class CounterUpdater:
    def __init__(self, db: Database) -> None:
        self._db = db

    async def on_like_added(self, story_id: str) -> bool:
        return await self._apply("like_added", story_id, like_count=_increment(Story.like_count))

    async def on_like_removed(self, story_id: str) -> bool:
        return await self._apply("like_removed", story_id, like_count=_decrement(Story.like_count))

    async def on_comment_added(self, story_id: str) -> bool:
        return await self._apply(
            "comment_added", story_id, comment_count=_increment(Story.comment_count)
        )

    async def on_comment_removed(self, story_id: str) -> bool:
        return await self._apply(
            "comment_removed", story_id, comment_count=_decrement(Story.comment_count)
        )

    async def on_view_recorded(self, story_id: str) -> bool:
        return await self._apply("view_recorded", story_id, view_count=_increment(Story.view_count))

    async def on_rating_upserted(
        self, story_id: str, old_rating: Optional[int], new_rating: int
    ) -> bool:
        """
        Maintain the running mean algebraically.

        add:      avg' = (avg * n + new) / (n + 1),  n' = n + 1
        replace:  avg' = avg + (new - old) / n,      n' = n

        A replace against a story whose count is already 0 (counter drifted)
        is treated as an add.
        """
        avg, count = Story.average_rating, Story.rating_count
        added = (avg * count + new_rating) / (count + 1)

        if old_rating is None:
            return await self._apply(
                "rating_added", story_id, average_rating=added, rating_count=count + 1
            )

        replaced = avg + (new_rating - old_rating) * 1.0 / count
        return await self._apply(
            "rating_replaced",
            story_id,
            average_rating=case((count > 0, replaced), else_=added),
            rating_count=case((count > 0, count), else_=count + 1),
        )

    async def on_rating_removed(self, story_id: str, old_rating: int) -> bool:
        """avg' = (avg * n - old) / (n - 1), or 0 once the last rating is gone."""
        avg, count = Story.average_rating, Story.rating_count
        remaining = (avg * count - old_rating) / (count - 1)
        return await self._apply(
            "rating_removed",
            story_id,
            average_rating=case((count > 1, remaining), else_=0.0),
            rating_count=_decrement(count),
        )

    async def _apply(self, operation: str, story_id: str, **values) -> bool:
        with tracer.start_as_current_span(f"counter_{operation}") as span:
            span.set_attribute("story.id", story_id)
            try:
                async with self._db.session() as session:
                    result = await session.execute(
                        update(Story)
                        .where(Story.story_id == story_id)
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    matched = result.rowcount
            except Exception as exc:
                COUNTER_UPDATE_ERRORS_TOTAL.labels(operation=operation).inc()
                logger.error(
                    "Counter update %s failed for story %s: %s — left for recompute",
                    operation, story_id, exc,
                )
                return False

            if not matched:
                COUNTER_UPDATE_ERRORS_TOTAL.labels(operation=operation).inc()
                logger.warning(
                    "Counter update %s skipped: story %s not found", operation, story_id
                )
                return False

        logger.debug("Counter update %s applied to story %s", operation, story_id)
        return True
