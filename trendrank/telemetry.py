"""
Observability setup:
  - OpenTelemetry distributed tracing → Jaeger (via OTLP gRPC)
  - Prometheus metrics for ranked reads, the score cache and snapshot batches

Both are initialised once at startup; FastAPI gets request spans via
instrument_app().
"""
import logging

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from prometheus_client import Counter, Gauge, Histogram

from trendrank.config import settings

logger = logging.getLogger(__name__)

# ─────────────────────────── Prometheus Metrics ───────────────────────────
RANK_LATENCY = Histogram(
    "rank_latency_seconds",
    "Latency of one ranked page read",
    ["scope", "source"],  # source: 'snapshot' or 'live'
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
)

RANK_REQUESTS_TOTAL = Counter(
    "rank_requests_total",
    "Ranked page reads served",
    ["scope", "source"],
)

SCORE_CACHE_REFRESHED = Counter(
    "score_cache_refreshed_total",
    "Posts whose cached boost score was recomputed",
)

CANDIDATES_TOTAL = Counter(
    "ranking_candidates_total",
    "Candidate posts produced by the selector, by fallback tier",
    ["tier"],
)

SNAPSHOT_RUNS_TOTAL = Counter(
    "snapshot_runs_total",
    "Snapshot batch runs by outcome",
    ["outcome"],  # 'written' | 'empty' | 'skipped' | 'failed'
)

SNAPSHOT_ROWS = Gauge(
    "snapshot_rows",
    "Rows written in the latest snapshot generation",
)

SNAPSHOT_DURATION = Histogram(
    "snapshot_duration_seconds",
    "Wall time of a snapshot batch that wrote a generation",
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
)

CURSOR_DECODE_FAILURES = Counter(
    "cursor_decode_failures_total",
    "Cursor tokens that could not be decoded (treated as first page)",
)


# ─────────────────────────── OpenTelemetry Setup ──────────────────────────
def setup_tracing() -> None:
    """Configure the global OTel TracerProvider with OTLP/Jaeger export."""
    if not settings.otel_enabled:
        logger.info("OTel tracing disabled")
        return

    resource = Resource.create(
        {
            "service.name": settings.service_name,
            "deployment.environment": settings.environment,
            "trendrank.batch_lock": settings.batch_lock,
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

    SQLAlchemyInstrumentor().instrument()


def instrument_app(app) -> None:  # noqa: ANN001
    """Call after app is created to add FastAPI request spans."""
    if settings.otel_enabled:
        FastAPIInstrumentor.instrument_app(app)
