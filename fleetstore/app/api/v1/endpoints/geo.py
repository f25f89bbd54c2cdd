"""
Geospatial API Endpoints.

Radius (geofence) and polygon queries over stored points.
"""

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Query

from fleetstore.app.core.dependencies import get_engine, time_range_params
from fleetstore.app.domain.engine import TelemetryEngine
from fleetstore.app.domain.fleet.reference import DEFAULT_GEOFENCE_M
from fleetstore.app.domain.timeutil import TimeRange
from fleetstore.app.schemas.geo import (
    GeoContainsHit,
    GeoContainsRequest,
    GeoContainsResponse,
    GeoWithinHit,
    GeoWithinResponse,
)

router = APIRouter(prefix="/geo", tags=["Geospatial"])


@router.get("/within", response_model=GeoWithinResponse)
async def geo_within(
    latitude: Optional[float] = Query(None, ge=-90, le=90, description="Center latitude"),
    longitude: Optional[float] = Query(None, ge=-180, le=180, description="Center longitude"),
    place: Optional[str] = Query(None, description="Use a known place as the center"),
    radius_m: float = Query(DEFAULT_GEOFENCE_M, ge=0, description="Radius in meters (inclusive)"),
    time_range: TimeRange = Depends(time_range_params),
    engine: TelemetryEngine = Depends(get_engine)
):
    """
    Points within `radius_m` meters of a center, by (time, entity_id).

    Distances are great-circle distances on a spherical Earth.
    """
    hits = await asyncio.to_thread(engine.geo_within, latitude, longitude, radius_m, time_range, place=place)
    if place is not None:
        center = engine.reference.place_by_name(place)
        latitude, longitude = center.latitude, center.longitude
    return GeoWithinResponse(
        latitude=latitude,
        longitude=longitude,
        radius_m=radius_m,
        count=len(hits),
        hits=[GeoWithinHit(entity_id=h.entity_id, time=h.time, distance_m=h.distance_m) for h in hits],
    )


@router.post("/contains", response_model=GeoContainsResponse)
async def geo_contains(
    request: GeoContainsRequest,
    engine: TelemetryEngine = Depends(get_engine)
):
    """Points inside a polygon, by (time, entity_id)."""
    time_range = TimeRange(request.start, request.end)
    polygon = [(v.latitude, v.longitude) for v in request.polygon]
    hits = await asyncio.to_thread(engine.geo_contains, polygon, time_range)
    return GeoContainsResponse(
        count=len(hits),
        hits=[GeoContainsHit(entity_id=h.entity_id, time=h.time) for h in hits],
    )
