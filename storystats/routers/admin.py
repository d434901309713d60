"""
Admin endpoints:
  GET  /admin/dashboard?window=last_week|last_month — site-wide totals
  GET  /admin/stats-cache/status                    — cache health report
  POST /admin/stats/recompute                       — run (or queue) a recompute
  GET  /admin/stats/recompute/last                  — last stored report
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse

from storystats.clients.kafka_producer import RecomputeRequestProducer
from storystats.clients.redis_client import RedisClient
from storystats.dependencies import (
    get_dashboard,
    get_engine,
    get_health_reporter,
    get_producer,
    get_redis,
)
from storystats.schemas import (
    CacheStatus,
    DashboardStats,
    DashboardWindow,
    RecomputeReport,
    RecomputeRequest,
)
from storystats.stats.dashboard import DashboardAggregator
from storystats.stats.health import CacheHealthReporter
from storystats.stats.recompute import RecomputationEngine

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/dashboard", response_model=DashboardStats)
async def dashboard(
    window: DashboardWindow = Query(DashboardWindow.LAST_WEEK),
    aggregator: DashboardAggregator = Depends(get_dashboard),
):
    return await aggregator.get_dashboard_totals(window)


@router.get("/stats-cache/status", response_model=CacheStatus)
async def stats_cache_status(reporter: CacheHealthReporter = Depends(get_health_reporter)):
    return await reporter.cache_status()


@router.post("/stats/recompute", response_model=RecomputeReport)
async def recompute(
    body: Optional[RecomputeRequest] = None,
    background: bool = Query(False),
    engine: RecomputationEngine = Depends(get_engine),
    producer: Optional[RecomputeRequestProducer] = Depends(get_producer),
):
    """
    Run a recompute and return its report.

    With background=true the request is queued for the recompute worker and
    202 is returned immediately.
    """
    story_ids = body.story_ids if body is not None else None

    if background:
        if producer is None:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Background recompute unavailable: Kafka producer not running",
            )
        await producer.publish_recompute_request(story_ids)
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={"status": "queued", "story_ids": story_ids},
        )

    logger.info(
        "Admin recompute requested (%s)",
        f"{len(story_ids)} stories" if story_ids is not None else "all published stories",
    )
    return await engine.recompute_all(story_ids)


@router.get("/stats/recompute/last", response_model=RecomputeReport)
async def last_recompute(redis: Optional[RedisClient] = Depends(get_redis)):
    report = await redis.get_last_report() if redis is not None else None
    if report is None:
        raise HTTPException(status_code=404, detail="No recompute report stored")
    return report
