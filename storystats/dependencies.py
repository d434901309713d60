"""
FastAPI dependencies.

Connection objects live on app.state (set up in the lifespan) and are handed
to the stats components per request.
"""
from typing import Optional

from fastapi import Request

from storystats.clients.kafka_producer import RecomputeRequestProducer
from storystats.clients.redis_client import RedisClient, RedisRecomputeCoordinator
from storystats.database import Database
from storystats.stats.dashboard import DashboardAggregator
from storystats.stats.health import CacheHealthReporter
from storystats.stats.queries import StatsQueryService
from storystats.stats.recompute import RecomputationEngine
from storystats.stats.updaters import CounterUpdater


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_redis(request: Request) -> Optional[RedisClient]:
    return getattr(request.app.state, "redis", None)


def get_producer(request: Request) -> Optional[RecomputeRequestProducer]:
    return getattr(request.app.state, "producer", None)


def get_updater(request: Request) -> CounterUpdater:
    return CounterUpdater(get_database(request))


def get_query_service(request: Request) -> StatsQueryService:
    return StatsQueryService(get_database(request))


def get_dashboard(request: Request) -> DashboardAggregator:
    return DashboardAggregator(get_database(request))


def get_health_reporter(request: Request) -> CacheHealthReporter:
    return CacheHealthReporter(get_database(request))


def get_engine(request: Request) -> RecomputationEngine:
    redis = get_redis(request)
    coordinator = RedisRecomputeCoordinator(redis) if redis is not None else None
    return RecomputationEngine(get_database(request), coordinator=coordinator)
