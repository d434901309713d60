import asyncio
import random
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from storystats.main import app
from storystats.models import Comment, Like, Rating, Story


async def _story(db, story_id: str) -> Story:
    async with db.session() as session:
        return await session.get(Story, story_id)


@pytest.mark.asyncio
async def test_health(api_client):
    resp = await api_client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_like_is_idempotent(api_client, db, add_rows, make_story):
    await add_rows(make_story("s1"))

    first = await api_client.post("/stories/s1/like", json={"user_id": "u1"})
    repeat = await api_client.post("/stories/s1/like", json={"user_id": "u1"})

    assert first.json() == {"story_id": "s1", "counters_updated": True}
    assert repeat.json() == {"story_id": "s1", "counters_updated": False}
    assert (await _story(db, "s1")).like_count == 1

    resp = await api_client.delete("/stories/s1/like", params={"user_id": "u1"})
    assert resp.json()["counters_updated"] is True
    resp = await api_client.delete("/stories/s1/like", params={"user_id": "u1"})
    assert resp.json()["counters_updated"] is False
    assert (await _story(db, "s1")).like_count == 0


@pytest.mark.asyncio
async def test_interaction_on_unknown_story_is_404(api_client):
    resp = await api_client.post("/stories/ghost/like", json={"user_id": "u1"})
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_likes_and_unlikes_converge_with_rows(api_client, db, add_rows, make_story):
    await add_rows(make_story("s1"))
    rng = random.Random(7)
    for _ in range(60):
        user = f"u{rng.randint(0, 9)}"
        if rng.random() < 0.6:
            await api_client.post("/stories/s1/like", json={"user_id": user})
        else:
            await api_client.delete("/stories/s1/like", params={"user_id": user})

    async with db.session() as session:
        rows = await session.scalar(
            select(func.count()).select_from(Like).where(Like.story_id == "s1")
        )
    assert (await _story(db, "s1")).like_count == rows


@pytest.mark.asyncio
async def test_ratings_flow(api_client, db, add_rows, make_story):
    await add_rows(make_story("s1"))

    for i, rating in enumerate((5, 5, 5, 1, 1)):
        resp = await api_client.put(
            "/stories/s1/rating", json={"user_id": f"u{i}", "rating": rating}
        )
        assert resp.status_code == 200

    stats = (await api_client.get("/stories/s1/stats")).json()
    assert stats["average_rating"] == 3.4
    assert stats["rating_count"] == 5

    # same value again changes nothing
    resp = await api_client.put("/stories/s1/rating", json={"user_id": "u0", "rating": 5})
    assert resp.json()["counters_updated"] is False

    # u3 changes 1 → 3: (5+5+5+3+1)/5
    await api_client.put("/stories/s1/rating", json={"user_id": "u3", "rating": 3})
    stats = (await api_client.get("/stories/s1/stats")).json()
    assert stats["average_rating"] == 3.8
    assert stats["rating_count"] == 5

    resp = await api_client.delete("/stories/s1/rating", params={"user_id": "u4"})
    assert resp.json()["counters_updated"] is True
    stats = (await api_client.get("/stories/s1/stats")).json()
    assert stats["rating_count"] == 4
    assert stats["average_rating"] == 4.5

    async with db.session() as session:
        assert await session.scalar(select(func.count()).select_from(Rating)) == 4


@pytest.mark.asyncio
async def test_simultaneous_first_ratings_by_one_user(api_client, db, add_rows, make_story):
    await add_rows(make_story("s1"))

    responses = await asyncio.gather(
        *[
            api_client.put("/stories/s1/rating", json={"user_id": "u1", "rating": 4})
            for _ in range(5)
        ]
    )

    assert [r.status_code for r in responses] == [200] * 5
    assert sum(r.json()["counters_updated"] for r in responses) == 1
    story = await _story(db, "s1")
    assert story.rating_count == 1
    assert story.average_rating == 4
    async with db.session() as session:
        assert await session.scalar(select(func.count()).select_from(Rating)) == 1


@pytest.mark.asyncio
async def test_rating_out_of_range_is_rejected(api_client, add_rows, make_story):
    await add_rows(make_story("s1"))

    resp = await api_client.put("/stories/s1/rating", json={"user_id": "u1", "rating": 6})

    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_comments(api_client, db, add_rows, make_story):
    await add_rows(make_story("s1"))

    resp = await api_client.post(
        "/stories/s1/comments", json={"user_id": "u1", "content": "Loved it"}
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["content"] == "Loved it"
    assert body["counters_updated"] is True
    assert (await _story(db, "s1")).comment_count == 1

    resp = await api_client.delete(f"/stories/s1/comments/{body['comment_id']}")
    assert resp.status_code == 200
    assert (await _story(db, "s1")).comment_count == 0
    async with db.session() as session:
        assert await session.scalar(select(func.count()).select_from(Comment)) == 0

    resp = await api_client.delete(f"/stories/s1/comments/{body['comment_id']}")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_views_are_counted_per_page_load(api_client, db, add_rows, make_story):
    await add_rows(make_story("s1"))

    for _ in range(3):
        await api_client.post("/stories/s1/views", json={"viewer_id": "anon-1"})

    stats = (await api_client.get("/stories/s1/stats")).json()
    assert stats["view_count"] == 3


@pytest.mark.asyncio
async def test_story_stats_endpoint(api_client, add_rows, make_story):
    await add_rows(make_story("s1"))

    resp = await api_client.get("/stories/s1/stats", params={"live_comments": "true"})
    assert resp.status_code == 200
    assert resp.json()["comment_count"] == 0

    resp = await api_client.get("/stories/missing/stats")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_listing_endpoint(api_client, add_rows, make_story):
    await add_rows(make_story("a", like_count=2), make_story("b"))

    resp = await api_client.get("/stories/stats", params={"ids": "b, a,ghost"})

    assert resp.status_code == 200
    body = resp.json()
    assert list(body["stats"]) == ["b", "a"]
    assert body["stats"]["a"]["like_count"] == 2
    assert body["source"] == "cache"
    assert body["degraded"] is False

    resp = await api_client.get("/stories/stats", params={"ids": " , "})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_admin_recompute_inline(api_client, add_rows, make_story):
    await add_rows(make_story("s1"), make_story("s2"), Like(story_id="s1", user_id="u1"))

    resp = await api_client.post("/admin/stats/recompute")
    assert resp.status_code == 200
    report = resp.json()
    assert report["processed"] == 2
    assert report["failed"] == 0
    assert report["skipped"] is False

    resp = await api_client.post("/admin/stats/recompute", json={"story_ids": ["s1"]})
    assert resp.json()["processed"] == 1
    assert resp.json()["unchanged"] == 1


@pytest.mark.asyncio
async def test_admin_recompute_background(api_client):
    resp = await api_client.post("/admin/stats/recompute", params={"background": "true"})
    assert resp.status_code == 503

    producer = AsyncMock()
    app.state.producer = producer
    resp = await api_client.post(
        "/admin/stats/recompute",
        params={"background": "true"},
        json={"story_ids": ["s1", "s2"]},
    )

    assert resp.status_code == 202
    assert resp.json()["status"] == "queued"
    producer.publish_recompute_request.assert_awaited_once_with(["s1", "s2"])


@pytest.mark.asyncio
async def test_last_recompute_without_redis_is_404(api_client):
    resp = await api_client.get("/admin/stats/recompute/last")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_admin_dashboard_and_cache_status(api_client, add_rows, make_story):
    await add_rows(make_story("s1"))

    resp = await api_client.get("/admin/dashboard", params={"window": "last_month"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["stories"]["total"] == 1
    assert body["metadata"]["window"] == "last_month"
    assert body["degraded_metrics"] == []

    resp = await api_client.get("/admin/dashboard", params={"window": "last_year"})
    assert resp.status_code == 422

    resp = await api_client.get("/admin/stats-cache/status")
    assert resp.status_code == 200
    assert resp.json()["published_stories"] == 1
    assert resp.json()["cached_stories"] == 0
