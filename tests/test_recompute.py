from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select, update

from storystats.models import (
    Comment,
    Like,
    Rating,
    Story,
    StoryStatsCache,
    ViewEvent,
    utcnow,
)
from storystats.stats.counters import Rollup
from storystats.stats.recompute import RecomputationEngine


async def _cache_rows(db) -> dict[str, StoryStatsCache]:
    async with db.session() as session:
        rows = (await session.scalars(select(StoryStatsCache))).all()
    return {row.story_id: row for row in rows}


async def _story(db, story_id: str) -> Story:
    async with db.session() as session:
        return await session.get(Story, story_id)


@pytest.fixture
def engine(db):
    return RecomputationEngine(db, concurrency=4, schema_version="2.0")


@pytest.mark.asyncio
async def test_recompute_derives_rollups_from_events(db, add_rows, make_story, engine):
    await add_rows(
        make_story("s1", view_count=12),
        *[Like(story_id="s1", user_id=f"u{i}") for i in range(3)],
        *[Comment(story_id="s1", user_id="u1", content="nice") for _ in range(2)],
        *[
            Rating(story_id="s1", user_id=f"u{i}", rating=r)
            for i, r in enumerate((5, 5, 5, 1, 1))
        ],
    )

    report = await engine.recompute_all()

    assert report.processed == 1
    assert report.updated == 1
    assert report.failed == 0
    cached = (await _cache_rows(db))["s1"]
    assert Rollup.from_row(cached) == Rollup(
        view_count=12, like_count=3, comment_count=2, average_rating=3.4, rating_count=5
    )
    assert cached.schema_version == "2.0"
    assert cached.last_calculated is not None

    story = await _story(db, "s1")
    assert (story.like_count, story.comment_count, story.rating_count) == (3, 2, 5)
    assert story.average_rating == 3.4


@pytest.mark.asyncio
async def test_recompute_is_idempotent(db, add_rows, make_story, engine):
    await add_rows(
        make_story("s1"),
        make_story("s2"),
        Like(story_id="s1", user_id="u1"),
        Rating(story_id="s2", user_id="u1", rating=4),
    )

    first = await engine.recompute_all()
    before = {sid: Rollup.from_row(row) for sid, row in (await _cache_rows(db)).items()}
    second = await engine.recompute_all()
    after = {sid: Rollup.from_row(row) for sid, row in (await _cache_rows(db)).items()}

    assert first.updated == 2
    assert second.updated == 0
    assert second.unchanged == 2
    assert before == after


@pytest.mark.asyncio
async def test_story_without_events_gets_a_zero_rollup(db, add_rows, make_story, engine):
    await add_rows(make_story("quiet"))

    await engine.recompute_all()

    assert Rollup.from_row((await _cache_rows(db))["quiet"]) == Rollup()


@pytest.mark.asyncio
async def test_recompute_heals_drifted_counters(db, add_rows, make_story, engine):
    await add_rows(make_story("s1"), Like(story_id="s1", user_id="u1"))
    async with db.session() as session:
        await session.execute(
            update(Story).where(Story.story_id == "s1").values(like_count=99, comment_count=-4)
        )

    await engine.recompute_all()

    story = await _story(db, "s1")
    assert story.like_count == 1
    assert story.comment_count == 0


@pytest.mark.asyncio
async def test_one_bad_story_does_not_abort_the_batch(db, add_rows, make_story, engine):
    await add_rows(
        make_story("good-1"),
        make_story("bad"),
        make_story("good-2"),
        Like(story_id="good-1", user_id="u1"),
        Like(story_id="good-2", user_id="u1"),
        Rating(story_id="bad", user_id="u1", rating=7),
    )

    report = await engine.recompute_all()

    assert report.processed == 3
    assert report.updated == 2
    assert report.failed == 1
    assert [f.story_id for f in report.failures] == ["bad"]
    assert "rating outside" in report.failures[0].error
    cached = await _cache_rows(db)
    assert set(cached) == {"good-1", "good-2"}


@pytest.mark.asyncio
async def test_scope_limits_the_batch_and_reports_unknown_ids(db, add_rows, make_story, engine):
    await add_rows(make_story("s1"), make_story("s2"), make_story("draft", published=False))

    report = await engine.recompute_all(["s2", "draft", "ghost", "s2"])

    assert report.processed == 3
    assert report.updated == 1
    assert report.failed == 2
    assert [f.story_id for f in report.failures] == ["draft", "ghost"]
    assert "not published" in report.failures[0].error
    assert set(await _cache_rows(db)) == {"s2"}


@pytest.mark.asyncio
async def test_full_batch_skips_drafts(db, add_rows, make_story, engine):
    await add_rows(make_story("s1"), make_story("draft", published=False))

    report = await engine.recompute_all()

    assert report.processed == 1
    assert set(await _cache_rows(db)) == {"s1"}


@pytest.mark.asyncio
async def test_full_batch_drops_cache_rows_of_unpublished_stories(db, add_rows, make_story, engine):
    await add_rows(make_story("s1"), make_story("s2"))
    await engine.recompute_all()
    async with db.session() as session:
        await session.execute(
            update(Story).where(Story.story_id == "s2").values(published=False)
        )

    report = await engine.recompute_all()

    assert report.processed == 1
    assert set(await _cache_rows(db)) == {"s1"}


@pytest.mark.asyncio
async def test_failure_sample_is_capped(db, add_rows, make_story):
    await add_rows(
        *[make_story(f"s{i}") for i in range(5)],
        *[Rating(story_id=f"s{i}", user_id="u1", rating=0) for i in range(5)],
    )
    engine = RecomputationEngine(db, concurrency=2, failure_sample=2)

    report = await engine.recompute_all()

    assert report.failed == 5
    assert len(report.failures) == 2


@pytest.mark.asyncio
async def test_schema_version_change_counts_as_update(db, add_rows, make_story):
    await add_rows(make_story("s1"))
    await RecomputationEngine(db, schema_version="1.0").recompute_all()

    report = await RecomputationEngine(db, schema_version="2.0").recompute_all()

    assert report.updated == 1
    assert (await _cache_rows(db))["s1"].schema_version == "2.0"


@pytest.mark.asyncio
async def test_counter_policy_leaves_story_view_counter_alone(db, add_rows, make_story, engine):
    await add_rows(make_story("s1", view_count=40), ViewEvent(story_id="s1", viewer_id="a"))

    await engine.recompute_all()

    assert (await _story(db, "s1")).view_count == 40
    assert (await _cache_rows(db))["s1"].view_count == 40


@pytest.mark.asyncio
async def test_events_policy_counts_every_view(db, add_rows, make_story):
    now = utcnow()
    await add_rows(
        make_story("s1", view_count=40),
        *[ViewEvent(story_id="s1", viewer_id="a", created_at=now) for _ in range(3)],
    )
    engine = RecomputationEngine(db, view_count_policy="events")

    await engine.recompute_all()

    assert (await _story(db, "s1")).view_count == 3


@pytest.mark.asyncio
async def test_distinct_daily_policy(db, add_rows, make_story):
    today = utcnow().replace(hour=12, minute=0, second=0, microsecond=0)
    yesterday = today - timedelta(days=1)
    await add_rows(
        make_story("s1"),
        ViewEvent(story_id="s1", viewer_id="a", created_at=today),
        ViewEvent(story_id="s1", viewer_id="a", created_at=today + timedelta(minutes=5)),
        ViewEvent(story_id="s1", viewer_id="a", created_at=yesterday),
        ViewEvent(story_id="s1", viewer_id="b", created_at=today),
    )
    engine = RecomputationEngine(db, view_count_policy="distinct_daily")

    await engine.recompute_all()

    assert (await _cache_rows(db))["s1"].view_count == 3


@pytest.mark.asyncio
async def test_locked_batch_is_skipped(db, add_rows, make_story):
    await add_rows(make_story("s1"))
    coordinator = AsyncMock()
    coordinator.acquire.return_value = False
    engine = RecomputationEngine(db, coordinator=coordinator)

    report = await engine.recompute_all()

    assert report.skipped is True
    assert report.processed == 0
    coordinator.release.assert_not_awaited()
    assert await _cache_rows(db) == {}


@pytest.mark.asyncio
async def test_coordinator_is_released_and_report_saved(db, add_rows, make_story):
    await add_rows(make_story("s1"))
    coordinator = AsyncMock()
    coordinator.acquire.return_value = True
    engine = RecomputationEngine(db, coordinator=coordinator)

    report = await engine.recompute_all()

    coordinator.release.assert_awaited_once()
    coordinator.save_report.assert_awaited_once_with(report)
    assert report.finished_at is not None
    assert report.duration_ms >= 0
