"""
Admin Operations API Endpoints.

Retention status, on-demand compaction and refresh, routing statistics
and the dead letter queue.
"""

import asyncio
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fleetstore.app.core.dependencies import get_engine, get_scheduler
from fleetstore.app.core.exceptions import OutOfOrderRejected, ValidationError
from fleetstore.app.db.session import get_db
from fleetstore.app.domain.engine import TelemetryEngine
from fleetstore.app.domain.timeutil import utc_now
from fleetstore.app.models.dlq import DeadLetterQueue, DLQStatus
from fleetstore.app.schemas.aggregate import RefreshResponse
from fleetstore.app.schemas.ops import (
    CompactionResponse,
    DeadLetterResponse,
    PartitionStatusResponse,
    RetentionStatusResponse,
    RoutingStatsResponse,
)
from fleetstore.app.services.dead_letter import INGEST_TASK, list_dead_letters
from fleetstore.app.services.scheduler import MaintenanceScheduler

router = APIRouter(prefix="/admin/ops", tags=["Admin - Ops"])


@router.get("/retention", response_model=RetentionStatusResponse)
async def retention_status(engine: TelemetryEngine = Depends(get_engine)):
    """Lifecycle state, age and size of every partition."""
    retention = engine.compactor.retention
    return RetentionStatusResponse(
        compact_after_seconds=int(engine.compactor.compact_after.total_seconds()),
        retention_seconds=int(retention.total_seconds()) if retention is not None else None,
        partitions=[PartitionStatusResponse.model_validate(s) for s in engine.retention_status()],
    )


@router.post("/compact", response_model=CompactionResponse)
async def trigger_compaction(
    engine: TelemetryEngine = Depends(get_engine),
    scheduler: Optional[MaintenanceScheduler] = Depends(get_scheduler)
):
    """
    Run one compactor cycle now.

    Compacts partitions past the compaction age and evicts partitions past
    retention; failed partitions are listed and retried next cycle.
    """
    if scheduler is not None:
        report = await scheduler.run_compaction()
    else:
        report = await asyncio.to_thread(engine.run_compaction)
    return CompactionResponse(
        compacted=report.compacted,
        evicted=report.evicted,
        failed={start.isoformat(): reason for start, reason in report.failed.items()},
    )


@router.post("/refresh/{name}", response_model=RefreshResponse)
async def trigger_refresh(
    name: str = Path(..., description="Aggregate name"),
    engine: TelemetryEngine = Depends(get_engine),
    scheduler: Optional[MaintenanceScheduler] = Depends(get_scheduler)
):
    """
    Refresh one aggregate up to now minus the refresh lag.

    Returns 503 (ERR_REFRESH_001) if the refresh fails; the watermark is
    left where it was.
    """
    result = await asyncio.to_thread(engine.refresh, name)
    if scheduler is not None and result.buckets_updated:
        await scheduler.sync_catalog()
    return RefreshResponse.model_validate(result)


@router.get("/routing-stats", response_model=RoutingStatsResponse)
async def routing_stats(engine: TelemetryEngine = Depends(get_engine)):
    """How aggregate queries have been routed since startup."""
    return RoutingStatsResponse(**engine.router.get_stats())


@router.get("/dlq", response_model=List[DeadLetterResponse])
async def get_dead_letters(
    status: Optional[DLQStatus] = Query(None, description="Filter by status"),
    task_name: Optional[str] = Query(None, description="Filter by task name"),
    entity_id: Optional[int] = Query(None, description="Filter ingest rejections by entity"),
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db)
):
    """Dead letter items, newest first."""
    return await list_dead_letters(db, status=status, task_name=task_name, entity_id=entity_id, limit=limit)


@router.post("/dlq/{dlq_id}/retry", response_model=DeadLetterResponse)
async def retry_dlq_item(
    dlq_id: int = Path(..., description="DLQ Item ID"),
    engine: TelemetryEngine = Depends(get_engine),
    db: AsyncSession = Depends(get_db)
):
    """
    Retry a dead letter item.

    Rejected telemetry records are ingested again and marked PROCESSED when
    accepted. Maintenance tasks are retried by the scheduler on its next
    cycle, so they are only marked RETRYING here.
    """
    result = await db.execute(select(DeadLetterQueue).where(DeadLetterQueue.id == dlq_id))
    item = result.scalar_one_or_none()

    if not item:
        raise HTTPException(status_code=404, detail="DLQ item not found")

    item.retry_count += 1
    item.last_retry_at = utc_now()

    if item.task_name == INGEST_TASK:
        record = (item.payload or {}).get("record")
        try:
            await asyncio.to_thread(engine.ingest_record, record if isinstance(record, dict) else {})
            item.status = DLQStatus.PROCESSED
        except (ValidationError, OutOfOrderRejected) as exc:
            item.status = DLQStatus.FAILED
            item.error_code = exc.error_code
            item.error_message = exc.message
    else:
        item.status = DLQStatus.RETRYING

    await db.commit()
    await db.refresh(item)
    return item
