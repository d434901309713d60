import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from storystats.worker import process_message, run_schedule


@pytest.fixture
def engine():
    engine = AsyncMock()
    engine.recompute_all.return_value = MagicMock(skipped=False)
    return engine


@pytest.mark.asyncio
async def test_scoped_request(engine):
    await process_message(
        {"story_ids": ["s1", "s2"], "requested_at": "2024-05-01T10:00:00"}, engine
    )
    engine.recompute_all.assert_awaited_once_with(["s1", "s2"])


@pytest.mark.asyncio
async def test_null_scope_means_every_story(engine):
    await process_message({"story_ids": None, "requested_at": "2024-05-01T10:00:00"}, engine)
    engine.recompute_all.assert_awaited_once_with(None)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "msg",
    [
        {"story_ids": "s1"},
        {"story_ids": ["s1", 7]},
        {"story_ids": [""]},
        ["s1"],
    ],
)
async def test_malformed_requests_are_dropped(engine, msg):
    await process_message(msg, engine)
    engine.recompute_all.assert_not_awaited()


@pytest.mark.asyncio
async def test_schedule_survives_a_failed_batch(engine):
    engine.recompute_all.side_effect = [RuntimeError("db down"), MagicMock(skipped=False)]

    task = asyncio.create_task(run_schedule(engine, interval=0))
    while engine.recompute_all.await_count < 2:
        await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert engine.recompute_all.await_count >= 2


@pytest.mark.asyncio
async def test_request_waits_for_a_running_batch(engine):
    engine.recompute_all.side_effect = [MagicMock(skipped=True), MagicMock(skipped=False)]

    await process_message({"story_ids": ["s1"]}, engine, retry_delay=0, attempts=3)

    assert engine.recompute_all.await_count == 2


@pytest.mark.asyncio
async def test_request_dropped_after_last_attempt_is_logged(engine, caplog):
    engine.recompute_all.return_value = MagicMock(skipped=True)

    await process_message({"story_ids": None}, engine, retry_delay=0, attempts=3)

    assert engine.recompute_all.await_count == 3
    assert "dropped" in caplog.text
