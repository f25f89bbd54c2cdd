"""
Operations schemas.

Retention status, maintenance reports, routing statistics and dead letters.
"""

from pydantic import BaseModel
from datetime import datetime
from typing import Any, Dict, Optional, List

from fleetstore.app.models.dlq import DLQStatus
from fleetstore.app.models.enums import PartitionState


class PartitionStatusResponse(BaseModel):
    """Lifecycle state of one partition."""
    start: datetime
    end: datetime
    state: PartitionState
    age_seconds: float
    point_count: int
    pending_rows: int
    compressed_bytes: int
    compacted_at: Optional[datetime]
    evicted_at: Optional[datetime]

    class Config:
        from_attributes = True


class RetentionStatusResponse(BaseModel):
    compact_after_seconds: int
    retention_seconds: Optional[int]
    partitions: List[PartitionStatusResponse]


class CompactionResponse(BaseModel):
    """Outcome of one compactor cycle."""
    compacted: List[datetime]
    evicted: List[datetime]
    failed: Dict[str, str]


class RoutingStatsResponse(BaseModel):
    total_queries: int
    by_source: Dict[str, int]
    by_reason: Dict[str, int]
    rollup_ratio: float


class DeadLetterResponse(BaseModel):
    id: int
    task_name: str
    error_code: Optional[str]
    error_message: str
    payload: Optional[Any]
    entity_id: Optional[int]
    record_index: Optional[int]
    status: DLQStatus
    retry_count: int
    created_at: datetime
    last_retry_at: Optional[datetime]

    class Config:
        from_attributes = True
