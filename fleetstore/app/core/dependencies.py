"""
Engine dependencies for FastAPI.

The telemetry engine and maintenance scheduler are built in the
application lifespan and stored on `app.state`; endpoints reach them
through these dependencies.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import Query, Request

from fleetstore.app.core.exceptions import ConfigurationError
from fleetstore.app.domain.engine import TelemetryEngine
from fleetstore.app.domain.timeutil import TimeRange
from fleetstore.app.services.scheduler import MaintenanceScheduler


def get_engine(request: Request) -> TelemetryEngine:
    """FastAPI dependency for the running telemetry engine."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise ConfigurationError("Telemetry engine is not initialized")
    return engine


def get_scheduler(request: Request) -> Optional[MaintenanceScheduler]:
    return getattr(request.app.state, "scheduler", None)


def time_range_params(
    start: Optional[datetime] = Query(None, description="Inclusive range start (UTC if no offset)"),
    end: Optional[datetime] = Query(None, description="Exclusive range end (UTC if no offset)"),
) -> TimeRange:
    """
    Query parameters for a half-open time range.

    Raises:
        ValidationError: start is after end
    """
    return TimeRange(start, end)


def entity_ids_param(
    entity_id: Optional[List[int]] = Query(None, description="Restrict to these entities (repeatable)"),
) -> Optional[List[int]]:
    return entity_id
