"""
Telemetry schemas.

`TelemetryPoint` is the immutable record held by the point store; the
response models shape what the HTTP layer returns.
"""

import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from fleetstore.app.domain.timeutil import ensure_utc, to_micros

# Measurement columns of the fleet telemetry feed
KNOWN_MEASUREMENTS = ("speed_kph", "heading_deg", "engine_temp_c", "fuel_pct", "cargo_kg")


class TelemetryPoint(BaseModel):
    """One GPS fix plus engine/cargo readings from one truck."""
    model_config = ConfigDict(frozen=True)

    entity_id: int = Field(..., ge=0)
    time: datetime = Field(..., validation_alias=AliasChoices("time", "timestamp"))
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    measurements: Dict[str, float] = Field(default_factory=dict)
    origin_id: Optional[int] = None
    destination_id: Optional[int] = None

    @model_validator(mode="before")
    @classmethod
    def collect_flat_measurements(cls, data: Any) -> Any:
        """Accept measurement columns given at the top level of a record."""
        if not isinstance(data, dict):
            return data
        flat = {name: data[name] for name in KNOWN_MEASUREMENTS if name in data}
        if not flat:
            return data
        data = {k: v for k, v in data.items() if k not in flat}
        data["measurements"] = {**flat, **(data.get("measurements") or {})}
        return data

    @field_validator("time")
    @classmethod
    def normalize_time(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @field_validator("latitude", "longitude")
    @classmethod
    def require_finite_coordinate(cls, value: float) -> float:
        if not math.isfinite(value):
            raise ValueError("coordinate must be finite")
        return value

    @field_validator("measurements")
    @classmethod
    def sort_measurements(cls, value: Dict[str, float]) -> Dict[str, float]:
        for name, reading in value.items():
            if not math.isfinite(reading):
                raise ValueError(f"measurement '{name}' must be finite")
        return {name: value[name] for name in sorted(value)}

    @property
    def micros(self) -> int:
        """Timestamp as integer microseconds since the epoch."""
        return to_micros(self.time)


class IngestRejection(BaseModel):
    """One record refused during batch ingestion."""
    index: int
    error_code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class IngestReport(BaseModel):
    """Outcome of ingesting a batch of records."""
    received: int
    accepted: int
    rejected: List[IngestRejection] = Field(default_factory=list)


class TelemetryBatch(BaseModel):
    """Batch of raw records; each record is validated on its own."""
    records: List[Dict[str, Any]] = Field(..., description="Raw telemetry records")


class RangeQueryResponse(BaseModel):
    count: int
    points: List[Dict[str, Any]]
