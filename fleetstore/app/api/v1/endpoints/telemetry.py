"""
Telemetry API Endpoints.

Batch ingestion and raw range queries.
"""

import asyncio
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fleetstore.app.core.dependencies import entity_ids_param, get_engine, time_range_params
from fleetstore.app.db.session import get_db
from fleetstore.app.domain.engine import TelemetryEngine
from fleetstore.app.domain.timeutil import TimeRange
from fleetstore.app.schemas.telemetry import IngestReport, RangeQueryResponse, TelemetryBatch
from fleetstore.app.services.dead_letter import record_rejections

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/telemetry", tags=["Telemetry"])


@router.post("", response_model=IngestReport, status_code=status.HTTP_202_ACCEPTED)
async def ingest_telemetry(
    batch: TelemetryBatch,
    engine: TelemetryEngine = Depends(get_engine),
    db: AsyncSession = Depends(get_db)
):
    """
    Ingest a batch of telemetry records.

    Records are validated one by one; rejected records are reported back
    and captured in the dead letter queue, the rest are stored.
    """
    report = await asyncio.to_thread(engine.ingest_many, batch.records)

    if report.rejected:
        try:
            await record_rejections(db, report, batch.records)
            await db.commit()
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.error("Could not record %d rejected records: %s", len(report.rejected), exc)

    logger.info(
        "Ingested batch: %d received, %d accepted, %d rejected",
        report.received, report.accepted, len(report.rejected),
    )
    return report


@router.get("", response_model=RangeQueryResponse)
async def range_query(
    entity_ids: Optional[List[int]] = Depends(entity_ids_param),
    time_range: TimeRange = Depends(time_range_params),
    fields: Optional[List[str]] = Query(None, description="Fields or measurement names to return (repeatable)"),
    engine: TelemetryEngine = Depends(get_engine)
):
    """
    Raw points in (time, entity_id) order.

    Returns 404 (ERR_QUERY_001) if the range touches evicted partitions.
    """
    points = await asyncio.to_thread(engine.range_query, entity_ids, time_range, fields)
    return RangeQueryResponse(count=len(points), points=points)
