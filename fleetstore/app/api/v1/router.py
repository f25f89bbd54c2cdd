"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from fleetstore.app.api.v1.endpoints import (
    telemetry, geo, aggregates, admin_ops, reference
)

router = APIRouter()

# Ingestion and raw range queries
router.include_router(telemetry.router)

# Radius and polygon queries
router.include_router(geo.router)

# Rollup / raw aggregate queries
router.include_router(aggregates.router)

# Maintenance and dead letters
router.include_router(admin_ops.router)

# Places, entities and routes
router.include_router(reference.router)
