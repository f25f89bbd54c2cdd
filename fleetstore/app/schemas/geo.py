"""
Geospatial query schemas.

Request and response models for radius and polygon queries.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List


class GeoVertex(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class GeoContainsRequest(BaseModel):
    """Polygon query; edges are great-circle arcs between consecutive vertices."""
    polygon: List[GeoVertex] = Field(..., min_length=3, description="Polygon vertices in order")
    start: Optional[datetime] = Field(None, description="Inclusive range start")
    end: Optional[datetime] = Field(None, description="Exclusive range end")


class GeoWithinHit(BaseModel):
    """A point within the query radius."""
    entity_id: int
    time: datetime
    distance_m: float

    class Config:
        from_attributes = True


class GeoContainsHit(BaseModel):
    """A point inside the query polygon."""
    entity_id: int
    time: datetime

    class Config:
        from_attributes = True


class GeoWithinResponse(BaseModel):
    latitude: float
    longitude: float
    radius_m: float
    count: int
    hits: List[GeoWithinHit]


class GeoContainsResponse(BaseModel):
    count: int
    hits: List[GeoContainsHit]
