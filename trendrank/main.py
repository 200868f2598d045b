"""
Trendrank API — entry point.

Startup sequence:
  1. Configure OTel tracing (→ Jaeger via OTLP)
  2. Create tables if not present
  3. Build the snapshot scheduler (local or advisory batch lock)
  4. Start the scheduler loop unless SNAPSHOT_SCHEDULER_ENABLED=false
  5. Expose Prometheus /metrics endpoint
"""
import logging

from contextlib import asynccontextmanager
from fastapi import FastAPI
from prometheus_client import make_asgi_app

from trendrank.config import settings
from trendrank.database import init_db
from trendrank.ranking.snapshots import build_scheduler
from trendrank.routers import feed, hashtags, jobs, posts
from trendrank.telemetry import instrument_app, setup_tracing

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)

# Set up tracing before the app is created so all imports are instrumented
setup_tracing()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Trendrank API (env=%s)", settings.environment)

    await init_db()
    app.state.scheduler = build_scheduler()
    if settings.snapshot_scheduler_enabled:
        app.state.scheduler.start()
    else:
        logger.info("In-process snapshot scheduler disabled")

    logger.info("API ready.")
    yield

    logger.info("Shutting down...")
    await app.state.scheduler.stop()


app = FastAPI(
    title="Trendrank API",
    description=(
        "Popularity-ranked feeds: time-decayed engagement scores, "
        "precomputed snapshot generations and stable cursor pagination."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── Routers ────────────────────────────────────────────────────────────────
app.include_router(feed.router, prefix="/feed", tags=["Feed"])
app.include_router(hashtags.router, prefix="/hashtags", tags=["Hashtags"])
app.include_router(posts.router, prefix="/posts", tags=["Posts"])
app.include_router(jobs.router, prefix="/jobs", tags=["Jobs"])

# ── Prometheus metrics endpoint ────────────────────────────────────────────
# Mounted at /metrics, scraped by Prometheus
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

# ── OTel FastAPI instrumentation ──────────────────────────────────────────
instrument_app(app)


@app.get("/health", tags=["Health"])
async def health():
    return {"status": "ok", "service": settings.service_name}
