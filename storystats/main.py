"""
Story Stats API — entry point.

Startup sequence:
  1. Configure OTel tracing (→ Jaeger via OTLP)
  2. Initialise DB connection pool (TiDB) and create tables if not present
  3. Connect to Redis (recompute lock + last report)
  4. Start Kafka producer (background recompute requests)
  5. Expose Prometheus /metrics endpoint
"""
import logging

from contextlib import asynccontextmanager
from fastapi import FastAPI
from prometheus_client import make_asgi_app

from storystats.config import settings
from storystats.database import Database
from storystats.telemetry import setup_tracing, instrument_app
from storystats.clients.kafka_producer import RecomputeRequestProducer
from storystats.clients.redis_client import RedisClient
from storystats.routers import admin, interactions, stories

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)

# Set up tracing before the app is created so all imports are instrumented
setup_tracing()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown of all external connections."""
    logger.info("Starting Story Stats API (env=%s)", settings.environment)

    database = Database()
    await database.init_schema()
    redis = RedisClient()
    await redis.start()
    producer = RecomputeRequestProducer()
    await producer.start()

    app.state.database = database
    app.state.redis = redis
    app.state.producer = producer

    logger.info("All services connected. API ready.")
    yield

    logger.info("Shutting down...")
    await producer.stop()
    await redis.stop()
    await database.dispose()


app = FastAPI(
    title="Story Stats API",
    description=(
        "Engagement statistics for a story platform: incremental counters, "
        "a batch-recomputed stats cache and an admin dashboard."
    ),
    version="2.0.0",
    lifespan=lifespan,
)

# ── Routers ────────────────────────────────────────────────────────────────
app.include_router(stories.router, prefix="/stories", tags=["Stats"])
app.include_router(interactions.router, prefix="/stories", tags=["Interactions"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])

# ── Prometheus metrics endpoint ────────────────────────────────────────────
# Mounted at /metrics — scraped by Prometheus
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

# ── OTel FastAPI instrumentation ──────────────────────────────────────────
instrument_app(app)


@app.get("/health", tags=["Health"])
async def health():
    return {"status": "ok", "service": settings.service_name}
