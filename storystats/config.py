"""
Configuration management using Pydantic BaseSettings.
All values can be overridden via environment variables or a .env file.
"""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── Database (TiDB / MySQL-protocol; sqlite+aiosqlite in tests) ────────
    database_url: str = "mysql+aiomysql://root:@tidb:4000/story_platform"
    db_pool_size: int = 20
    db_max_overflow: int = 10

    # ── Redis ──────────────────────────────────────────────────────────────
    redis_host: str = "redis"
    redis_port: int = 6379
    recompute_lock_ttl: int = 1800       # seconds a batch may hold the lock
    last_report_ttl: int = 7 * 86400

    # ── Kafka ──────────────────────────────────────────────────────────────
    kafka_bootstrap_servers: str = "kafka:9092"
    kafka_topic_recompute: str = "stats-recompute-requests"
    kafka_consumer_group: str = "stats-recompute-worker"

    # ── Recomputation Engine ───────────────────────────────────────────────
    recompute_concurrency: int = 8
    recompute_interval_seconds: int = 3600   # 0 disables the schedule
    stats_schema_version: str = "2.0"
    # 'counter' | 'events' | 'distinct_daily'
    view_count_policy: str = "counter"
    report_failure_sample: int = 20
    # a request that finds a batch running is retried after this many seconds
    request_retry_delay: float = 30.0
    request_retry_attempts: int = 6

    # ── Aggregation Query Layer ────────────────────────────────────────────
    story_query_timeout: float = 2.0
    listing_query_timeout: float = 5.0
    dashboard_query_timeout: float = 5.0
    top_list_limit: int = 10
    top_rated_min_ratings: int = 5

    # ── Cache health ───────────────────────────────────────────────────────
    cache_stale_after_seconds: int = 86400
    inconsistency_tolerance: float = 0.05
    inconsistency_sample: int = 20

    # ── Observability ──────────────────────────────────────────────────────
    otel_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://jaeger:4317"
    service_name: str = "story-stats"
    environment: str = "development"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
