"""
Aggregate schemas.

Defines aggregate definitions and query answers, which always name the
source that produced them.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List

from fleetstore.app.models.enums import AggregateFunction, QuerySource, RefreshMode


class AggregateDefinitionResponse(BaseModel):
    """A registered aggregate and how current it is."""
    name: str
    metric: str
    function: AggregateFunction
    bucket_width_seconds: float
    mode: RefreshMode
    watermark: Optional[datetime] = None


class AggregateRow(BaseModel):
    """One bucket of one entity."""
    bucket_start: datetime
    entity_id: int
    value: Optional[float]
    samples: int

    class Config:
        from_attributes = True


class AggregateQueryResponse(BaseModel):
    """Aggregate answer with the source that produced it."""
    name: str
    source: QuerySource
    reason: str
    watermark: Optional[datetime]
    rows: List[AggregateRow] = Field(default_factory=list)


class RefreshResponse(BaseModel):
    aggregate_name: str
    watermark: Optional[datetime]
    buckets_updated: int
    buckets_recomputed: int
    points_processed: int

    class Config:
        from_attributes = True
