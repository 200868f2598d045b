"""
Snapshot worker — dedicated scheduler process.

Deployments with several API replicas set SNAPSHOT_SCHEDULER_ENABLED=false on
the replicas and run this worker instead (or several workers with
BATCH_LOCK=advisory, so only one batch commits at a time).

  python -m trendrank.worker          # run forever on the configured interval
  python -m trendrank.worker --once   # write one generation and exit
"""
import argparse
import asyncio
import logging
import signal

from trendrank.config import settings
from trendrank.database import engine, init_db
from trendrank.ranking.snapshots import build_scheduler
from trendrank.telemetry import setup_tracing

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


async def main(once: bool = False) -> int:
    setup_tracing()
    await init_db()
    scheduler = build_scheduler()

    if once:
        written = await scheduler.run_batch()
        await engine.dispose()
        return 0 if written else 1

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    scheduler.start()
    logger.info(
        "Snapshot worker running (interval=%ds, lock=%s)",
        settings.snapshot_interval_seconds, settings.batch_lock,
    )
    try:
        await stop.wait()
    finally:
        await scheduler.stop()
        await engine.dispose()
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run the popular-score snapshot scheduler")
    parser.add_argument("--once", action="store_true", help="Write one generation and exit")
    args = parser.parse_args()
    raise SystemExit(asyncio.run(main(once=args.once)))
