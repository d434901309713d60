import asyncio

import pytest

from storystats.errors import StoryNotFoundError
from storystats.models import Comment, Like, Rating
from storystats.schemas import ListingSource
from storystats.stats.queries import StatsQueryService
from storystats.stats.recompute import RecomputationEngine
from storystats.stats.updaters import CounterUpdater


@pytest.mark.asyncio
async def test_story_stats_reads_counters(db, add_rows, make_story):
    await add_rows(
        make_story(
            "s1",
            view_count=10,
            like_count=2,
            comment_count=1,
            average_rating=3.4499,
            rating_count=4,
        )
    )

    stats = await StatsQueryService(db).get_story_stats("s1")

    assert stats.view_count == 10
    assert stats.like_count == 2
    assert stats.average_rating == 3.4
    assert stats.last_calculated is None


@pytest.mark.asyncio
async def test_story_stats_for_new_story_is_all_zero(db, add_rows, make_story):
    await add_rows(make_story("fresh"))

    stats = await StatsQueryService(db).get_story_stats("fresh")

    assert (stats.view_count, stats.like_count, stats.comment_count) == (0, 0, 0)
    assert stats.average_rating == 0.0
    assert stats.rating_count == 0


@pytest.mark.asyncio
async def test_story_stats_unknown_story(db):
    with pytest.raises(StoryNotFoundError):
        await StatsQueryService(db).get_story_stats("missing")


@pytest.mark.asyncio
async def test_live_comment_count_overrides_counter(db, add_rows, make_story):
    await add_rows(
        make_story("s1", comment_count=9),
        Comment(story_id="s1", user_id="u1", content="first"),
        Comment(story_id="s1", user_id="u2", content="second"),
    )
    service = StatsQueryService(db)

    assert (await service.get_story_stats("s1")).comment_count == 9
    assert (await service.get_story_stats("s1", live_comments=True)).comment_count == 2


@pytest.mark.asyncio
async def test_live_comment_count_failure_serves_counter(db, add_rows, make_story):
    await add_rows(make_story("s1", comment_count=3))
    async with db.engine.begin() as conn:
        await conn.run_sync(Comment.__table__.drop)

    stats = await StatsQueryService(db).get_story_stats("s1", live_comments=True)

    assert stats.comment_count == 3


@pytest.mark.asyncio
async def test_listing_keeps_input_order_and_omits_unknown_ids(db, add_rows, make_story):
    await add_rows(make_story("a", like_count=1), make_story("b"), make_story("c"))

    listing = await StatsQueryService(db).get_listing_stats(["c", "ghost", "a", "c"])

    assert list(listing.stats) == ["c", "a"]
    assert listing.source is ListingSource.CACHE
    assert listing.degraded is False
    assert listing.stats["a"].like_count == 1


@pytest.mark.asyncio
async def test_listing_prefers_cache_rows(db, add_rows, make_story):
    await add_rows(make_story("a"), make_story("b"), Like(story_id="a", user_id="u1"))
    await RecomputationEngine(db).recompute_all(["a"])
    # counter moves after the recompute; the cache keeps the recomputed value
    await CounterUpdater(db).on_like_added("a")

    listing = await StatsQueryService(db).get_listing_stats(["a", "b"])

    assert listing.stats["a"].like_count == 1
    assert listing.stats["a"].last_calculated is not None
    assert listing.stats["b"].like_count == 0
    assert listing.stats["b"].last_calculated is None


@pytest.mark.asyncio
async def test_listing_without_cache_reads_counters(db, add_rows, make_story):
    await add_rows(make_story("a", like_count=5))
    await RecomputationEngine(db).recompute_all(["a"])

    listing = await StatsQueryService(db).get_listing_stats(["a"], use_cache=False)

    assert listing.source is ListingSource.COUNTERS
    assert listing.stats["a"].like_count == 0


@pytest.mark.asyncio
async def test_listing_uses_a_bounded_number_of_statements(
    db, add_rows, make_story, statements
):
    ids = [f"s{i}" for i in range(25)]
    await add_rows(
        *[make_story(sid) for sid in ids],
        *[Rating(story_id=sid, user_id="u1", rating=4) for sid in ids],
    )
    await RecomputationEngine(db).recompute_all(ids[:10])
    statements.clear()

    listing = await StatsQueryService(db).get_listing_stats(ids)

    assert len(listing.stats) == 25
    assert len(statements) <= 2


@pytest.mark.asyncio
async def test_listing_falls_back_to_counters_when_cache_fails(
    db, add_rows, make_story, monkeypatch
):
    await add_rows(make_story("a", like_count=3))
    service = StatsQueryService(db)

    async def broken(ids):
        raise RuntimeError("cache table unavailable")

    monkeypatch.setattr(service, "_cached_stats", broken)

    listing = await service.get_listing_stats(["a"])

    assert listing.source is ListingSource.COUNTERS
    assert listing.degraded is True
    assert listing.stats["a"].like_count == 3


@pytest.mark.asyncio
async def test_listing_falls_back_to_counters_on_timeout(db, add_rows, make_story, monkeypatch):
    await add_rows(make_story("a", view_count=8))
    service = StatsQueryService(db, listing_timeout=0.05)

    async def slow(ids):
        await asyncio.sleep(1)
        return {}

    monkeypatch.setattr(service, "_cached_stats", slow)

    listing = await service.get_listing_stats(["a"])

    assert listing.degraded is True
    assert listing.stats["a"].view_count == 8


@pytest.mark.asyncio
async def test_empty_listing_issues_no_queries(db, statements):
    listing = await StatsQueryService(db).get_listing_stats([])

    assert listing.stats == {}
    assert statements == []
