"""
Observability setup:
  - OpenTelemetry distributed tracing → Jaeger (via OTLP gRPC)
  - Prometheus metrics for recompute batches, counter updates and read paths

Both are initialised once at startup; the API wires FastAPI instrumentation,
the recompute worker only sets up the tracer provider.
"""
import logging

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from prometheus_client import Counter, Histogram

from storystats.config import settings

logger = logging.getLogger(__name__)

# ─────────────────────────── Prometheus Metrics ───────────────────────────
RECOMPUTE_DURATION = Histogram(
    "stats_recompute_duration_seconds",
    "Wall-clock duration of a full recompute batch",
    buckets=[0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0],
)

RECOMPUTE_STORIES_TOTAL = Counter(
    "stats_recompute_stories_total",
    "Stories processed by the recompute engine",
    ["outcome"],  # 'updated' | 'unchanged' | 'failed'
)

COUNTER_UPDATE_ERRORS_TOTAL = Counter(
    "stats_counter_update_errors_total",
    "Incremental counter updates that did not apply (left for the next recompute)",
    ["operation"],
)

DASHBOARD_DEGRADED_TOTAL = Counter(
    "stats_dashboard_subquery_degraded_total",
    "Dashboard sub-aggregations that timed out or failed and were zeroed",
    ["metric"],
)

LISTING_FALLBACK_TOTAL = Counter(
    "stats_listing_fallback_total",
    "Listing requests that fell back from the stats cache to story counters",
)

QUERY_LATENCY = Histogram(
    "stats_query_latency_seconds",
    "Latency of the stats read paths",
    ["path"],  # 'story' | 'listing' | 'dashboard'
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
)


# ─────────────────────────── OpenTelemetry Setup ──────────────────────────
def setup_tracing(service_name: str | None = None) -> None:
    """Configure the global OTel TracerProvider with OTLP/Jaeger export."""
    if not settings.otel_enabled:
        logger.info("OTel tracing disabled")
        return

    resource = Resource.create(
        {
            "service.name": service_name or settings.service_name,
            "deployment.environment": settings.environment,
        }
    )

    provider = TracerProvider(resource=resource)

    try:
        otlp_exporter = OTLPSpanExporter(
            endpoint=settings.otel_exporter_otlp_endpoint,
            insecure=True,
        )
        provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
        logger.info(
            "OTel tracing configured → %s", settings.otel_exporter_otlp_endpoint
        )
    except Exception as exc:
        logger.warning("Could not connect to OTLP exporter: %s — traces disabled", exc)

    trace.set_tracer_provider(provider)

    # Auto-instrument popular libraries so their spans appear in traces
    RedisInstrumentor().instrument()
    SQLAlchemyInstrumentor().instrument()


def instrument_app(app) -> None:  # noqa: ANN001
    """Call after app is created to add FastAPI request spans."""
    if settings.otel_enabled:
        FastAPIInstrumentor.instrument_app(app)
