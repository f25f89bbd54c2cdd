"""
Reference data schemas.
"""

from pydantic import BaseModel
from datetime import datetime


class PlaceResponse(BaseModel):
    """Schema for place response."""
    id: int
    name: str
    latitude: float
    longitude: float

    class Config:
        from_attributes = True


class EntityResponse(BaseModel):
    """Schema for entity response."""
    id: int
    origin_id: int
    destination_id: int

    class Config:
        from_attributes = True


class RoutePositionResponse(BaseModel):
    """Expected position of an entity on its route."""
    entity_id: int
    at: datetime
    route_start: datetime
    fraction: float
    latitude: float
    longitude: float
