import os

# Settings are read at import time; keep tests off the OTLP exporter
os.environ.setdefault("OTEL_ENABLED", "false")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event

from storystats.database import Database
from storystats.main import app
from storystats.models import Story


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'stats.db'}")
    await database.init_schema()
    yield database
    await database.dispose()


@pytest.fixture
def add_rows(db):
    """Insert ORM rows in one committed transaction."""

    async def _add(*rows):
        async with db.session() as session:
            session.add_all(rows)

    return _add


@pytest.fixture
def make_story():
    def _make(story_id: str, **kwargs) -> Story:
        kwargs.setdefault("title", f"Story {story_id}")
        kwargs.setdefault("published", True)
        return Story(story_id=story_id, **kwargs)

    return _make


@pytest.fixture
def statements(db):
    """SQL statements sent to the database while the test runs."""
    captured: list[str] = []

    def _capture(conn, cursor, statement, parameters, context, executemany):
        captured.append(statement)

    event.listen(db.engine.sync_engine, "before_cursor_execute", _capture)
    yield captured
    event.remove(db.engine.sync_engine, "before_cursor_execute", _capture)


@pytest_asyncio.fixture
async def api_client(db):
    app.state.database = db
    app.state.redis = None
    app.state.producer = None
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.state.redis = None
    app.state.producer = None
