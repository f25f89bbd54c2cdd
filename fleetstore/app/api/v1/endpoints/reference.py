"""
Reference Data API Endpoints.

Known places, entity route assignments and expected route positions.
"""

from datetime import datetime, time
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query

from fleetstore.app.core.dependencies import get_engine
from fleetstore.app.domain.engine import TelemetryEngine
from fleetstore.app.domain.fleet.reference import route_fraction
from fleetstore.app.domain.timeutil import ensure_utc
from fleetstore.app.schemas.reference import EntityResponse, PlaceResponse, RoutePositionResponse

router = APIRouter(prefix="/reference", tags=["Reference"])


@router.get("/places", response_model=List[PlaceResponse])
async def list_places(engine: TelemetryEngine = Depends(get_engine)):
    return engine.reference.places()


@router.get("/entities", response_model=List[EntityResponse])
async def list_entities(engine: TelemetryEngine = Depends(get_engine)):
    """Entities seen in the feed with their route assignment."""
    return engine.reference.entities()


@router.get("/entities/{entity_id}/position", response_model=RoutePositionResponse)
async def route_position(
    entity_id: int = Path(..., ge=0),
    at: Optional[datetime] = Query(None, description="Time of interest, defaults to now"),
    route_start: Optional[datetime] = Query(None, description="When the route began, defaults to midnight UTC of `at`"),
    engine: TelemetryEngine = Depends(get_engine)
):
    """
    Expected position of an entity on its origin-destination route.

    The route repeats every 8 hours; the position is interpolated along the
    great circle between the two places.
    """
    at = ensure_utc(at) if at is not None else engine.clock()
    if route_start is None:
        route_start = datetime.combine(at.date(), time(0), tzinfo=at.tzinfo)
    route_start = ensure_utc(route_start)

    latitude, longitude = engine.reference.route_position(entity_id, at, route_start)
    return RoutePositionResponse(
        entity_id=entity_id,
        at=at,
        route_start=route_start,
        fraction=route_fraction(at, route_start),
        latitude=latitude,
        longitude=longitude,
    )
