"""
FastAPI Application Entry Point.

This is the main application file for the Fleet Telemetry Store.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError

from fleetstore.app.core.config import settings
from fleetstore.app.api.v1.router import router as api_v1_router
from fleetstore.app.core.observability import ObservabilityMiddleware, configure_logging
from fleetstore.app.db.session import AsyncSessionLocal, engine, Base
from fleetstore.app.domain.engine import TelemetryEngine
from fleetstore.app.services.catalog import CatalogService
from fleetstore.app.services.scheduler import MaintenanceScheduler
from fleetstore.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)

# Import models to ensure they are registered with Base
from fleetstore.app.models.partition_record import PartitionRecord
from fleetstore.app.models.rollup_bucket import RollupBucket
from fleetstore.app.models.aggregate_watermark import AggregateWatermark
from fleetstore.app.models.archived_segment import ArchivedSegment
from fleetstore.app.models.dlq import DeadLetterQueue
from fleetstore.app.models.place import PlaceRecord, EntityRecord

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Validates settings and builds the telemetry engine (fatal on bad config).
    2. Creates catalog tables, seeds places and restores persisted state.
    3. Starts the maintenance scheduler; stops it on shutdown.
    """
    configure_logging(settings.log_level)
    telemetry = TelemetryEngine.from_settings(settings)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    catalog = None
    if settings.catalog_sync_enabled:
        catalog = CatalogService(AsyncSessionLocal)
        try:
            await catalog.seed_reference(telemetry)
            await catalog.restore(telemetry)
        except SQLAlchemyError as exc:
            logger.error("Catalog restore failed, starting empty: %s", exc)

    scheduler = MaintenanceScheduler(
        telemetry,
        catalog=catalog,
        session_factory=AsyncSessionLocal,
        compaction_interval=settings.compaction_interval_seconds,
        refresh_interval=settings.refresh_interval_seconds,
    )
    app.state.engine = telemetry
    app.state.catalog = catalog
    app.state.scheduler = scheduler

    if settings.maintenance_enabled:
        scheduler.start()
    yield
    await scheduler.stop()
    await scheduler.sync_catalog()
    await engine.dispose()

# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Time-series store for fleet GPS and engine telemetry",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status and application information
    """
    telemetry = getattr(app.state, "engine", None)
    return {
        "status": "healthy" if telemetry is not None else "starting",
        "app_name": settings.app_name,
        "version": settings.api_version,
        "partitions": len(telemetry.store.partitions()) if telemetry is not None else 0,
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")


@app.get("/", tags=["Root"])
async def root():
    """
    Root endpoint.

    Returns:
        dict: Welcome message and API documentation links
    """
    return {
        "message": "Welcome to the Fleet Telemetry Store API",
        "docs": "/docs",
        "health": "/health",
    }
