"""
Recompute Worker — scheduler + Kafka consumer.

Two sources of work, one engine:
  1. A periodic scheduler that rebuilds every published story's rollups
     every recompute_interval_seconds (0 disables it).
  2. 'stats-recompute-requests' events published by the admin API, each
     carrying either a list of story ids or null for the whole catalogue.

Both paths go through the same RecomputationEngine guarded by the Redis
recompute lock, so overlapping batches never race on the cache. A scheduled
run that finds the lock held is skipped; a request waits and retries.
"""
import asyncio
import json
import logging

from aiokafka import AIOKafkaConsumer
from opentelemetry import trace

from storystats.config import settings
from storystats.database import Database
from storystats.telemetry import setup_tracing
from storystats.clients.redis_client import RedisClient, RedisRecomputeCoordinator
from storystats.stats.recompute import RecomputationEngine

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)

tracer = trace.get_tracer(__name__)


# ─────────────────────────── Message Handler ─────────────────────────────

async def process_message(
    msg: dict,
    engine: RecomputationEngine,
    retry_delay: float = settings.request_retry_delay,
    attempts: int = settings.request_retry_attempts,
) -> None:
    """
    Run one recompute request. While another batch holds the lock the request
    waits `retry_delay` seconds and tries again, up to `attempts` runs in all.
    """
    if not isinstance(msg, dict):
        logger.warning("Malformed recompute request: %s", msg)
        return

    story_ids = msg.get("story_ids")
    if story_ids is not None and (
        not isinstance(story_ids, list)
        or not all(isinstance(sid, str) and sid for sid in story_ids)
    ):
        logger.warning("Malformed recompute request: %s", msg)
        return

    with tracer.start_as_current_span("recompute_request") as span:
        span.set_attribute("recompute.requested_at", str(msg.get("requested_at")))
        span.set_attribute(
            "recompute.scope", "all" if story_ids is None else str(len(story_ids))
        )
        for attempt in range(1, attempts + 1):
            report = await engine.recompute_all(story_ids)
            if not report.skipped:
                span.set_attribute("recompute.attempts", attempt)
                return
            if attempt < attempts:
                logger.info(
                    "Recompute request %s waiting — batch already running (attempt %d/%d)",
                    msg, attempt, attempts,
                )
                await asyncio.sleep(retry_delay)
        logger.warning(
            "Recompute request %s dropped — batch still running after %d attempts",
            msg, attempts,
        )


# ─────────────────────────── Scheduler ───────────────────────────────────

async def run_schedule(engine: RecomputationEngine, interval: float) -> None:
    """Rebuild the full cache every `interval` seconds until cancelled."""
    while True:
        try:
            await engine.recompute_all()
        except Exception as exc:
            logger.error("Scheduled recompute failed: %s", exc)
        await asyncio.sleep(interval)


# ─────────────────────────── Main Loop ───────────────────────────────────

async def main() -> None:
    setup_tracing(f"{settings.service_name}-worker")

    database = Database()
    await database.init_schema()

    redis = RedisClient()
    await redis.start()

    engine = RecomputationEngine(database, coordinator=RedisRecomputeCoordinator(redis))

    scheduler = None
    if settings.recompute_interval_seconds > 0:
        scheduler = asyncio.create_task(
            run_schedule(engine, settings.recompute_interval_seconds)
        )
        logger.info(
            "Scheduled recompute every %ds", settings.recompute_interval_seconds
        )

    consumer = AIOKafkaConsumer(
        settings.kafka_topic_recompute,
        bootstrap_servers=settings.kafka_bootstrap_servers,
        group_id=settings.kafka_consumer_group,
        auto_offset_reset="earliest",
        value_deserializer=lambda v: json.loads(v.decode("utf-8")),
    )
    await consumer.start()
    logger.info(
        "Recompute worker listening on topic '%s'", settings.kafka_topic_recompute
    )

    try:
        async for msg in consumer:
            try:
                await process_message(msg.value, engine)
            except Exception as exc:
                logger.error("Recompute error for %s: %s", msg.value, exc)
    finally:
        if scheduler is not None:
            scheduler.cancel()
        await consumer.stop()
        await redis.stop()
        await database.dispose()


if __name__ == "__main__":
    asyncio.run(main())
