"""
Snapshot job endpoints:
  POST /jobs/popular-snapshot?max_wait=<s> — run one batch now (idempotent)
  GET  /jobs/popular-snapshot              — scheduler status

A trigger while a batch is running joins that batch instead of starting a
second one.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from trendrank.database import get_db
from trendrank.ranking.snapshots import SnapshotScheduler, latest_as_of
from trendrank.schemas import SnapshotStatusResponse, SnapshotTriggerResponse

logger = logging.getLogger(__name__)
router = APIRouter()


def get_scheduler(request: Request) -> SnapshotScheduler:
    return request.app.state.scheduler


@router.post("/popular-snapshot", response_model=SnapshotTriggerResponse)
async def trigger_snapshot(
    max_wait: Optional[float] = Query(None, ge=0, le=300),
    scheduler: SnapshotScheduler = Depends(get_scheduler),
):
    result = await scheduler.trigger(max_wait)
    logger.info(
        "Manual snapshot trigger: started=%s completed=%s written=%s",
        result.started, result.completed, result.written,
    )
    return SnapshotTriggerResponse(
        started=result.started,
        completed=result.completed,
        written=result.written,
    )


@router.get("/popular-snapshot", response_model=SnapshotStatusResponse)
async def snapshot_status(
    scheduler: SnapshotScheduler = Depends(get_scheduler),
    db: AsyncSession = Depends(get_db),
):
    return SnapshotStatusResponse(
        running=scheduler.running,
        latest_as_of=await latest_as_of(db),
    )
