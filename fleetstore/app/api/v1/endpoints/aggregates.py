"""
Aggregate API Endpoints.

Lists aggregate definitions and answers aggregate queries from rollups or
raw points, labeling which source answered.
"""

import asyncio
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query

from fleetstore.app.core.dependencies import entity_ids_param, get_engine, time_range_params
from fleetstore.app.domain.engine import TelemetryEngine
from fleetstore.app.domain.timeutil import TimeRange
from fleetstore.app.models.enums import QuerySource
from fleetstore.app.schemas.aggregate import AggregateDefinitionResponse, AggregateQueryResponse, AggregateRow

router = APIRouter(prefix="/aggregates", tags=["Aggregates"])


@router.get("", response_model=List[AggregateDefinitionResponse])
async def list_aggregates(engine: TelemetryEngine = Depends(get_engine)):
    """Registered aggregates with their current watermarks."""
    return [
        AggregateDefinitionResponse(
            name=d.name,
            metric=d.metric,
            function=d.function,
            bucket_width_seconds=d.bucket_width.total_seconds(),
            mode=d.mode,
            watermark=engine.rollups.watermark(d.name),
        )
        for d in engine.rollups.definitions()
    ]


@router.get("/{name}", response_model=AggregateQueryResponse)
async def aggregate_query(
    name: str = Path(..., description="Aggregate name"),
    entity_ids: Optional[List[int]] = Depends(entity_ids_param),
    time_range: TimeRange = Depends(time_range_params),
    source: Optional[QuerySource] = Query(None, description="Force rollup or raw instead of routing"),
    engine: TelemetryEngine = Depends(get_engine)
):
    """
    Aggregate buckets whose start lies in the range.

    Served from rollups when the range is aligned to bucket boundaries and
    covered by the watermark; otherwise reduced from raw points.
    """
    answer = await asyncio.to_thread(engine.aggregate_query, name, entity_ids, time_range, source)
    return AggregateQueryResponse(
        name=answer.name,
        source=answer.source,
        reason=answer.reason,
        watermark=answer.watermark,
        rows=[
            AggregateRow(bucket_start=r.bucket_start, entity_id=r.entity_id, value=r.value, samples=r.samples)
            for r in answer.rows
        ],
    )
