"""
Custom exceptions and error handlers for consistent error responses.

Provides standardized error codes for ingestion, maintenance and query
failures, plus the global exception handlers registered on the app.
"""

import logging
from typing import Any, Dict

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ConfigurationError(AppException):
    """Raised at startup for settings the store cannot run with. Fatal."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_CONFIG_001",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details
        )


class ValidationError(AppException):
    """Raised when a telemetry record is malformed. Rejected individually."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_VALIDATION_001",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details
        )


class OutOfOrderRejected(AppException):
    """Raised when a point arrives too late to be accepted."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_INGEST_002",
            status_code=status.HTTP_409_CONFLICT,
            details=details
        )


class CompactionRetryable(AppException):
    """Raised when compacting a partition fails; the partition keeps its rows."""

    def __init__(self, partition_start: Any, reason: str):
        super().__init__(
            message=f"Compaction of partition {partition_start} failed: {reason}",
            error_code="ERR_COMPACT_001",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"partition_start": str(partition_start), "reason": reason}
        )


class RefreshRetryable(AppException):
    """Raised when an aggregate refresh fails; the watermark is not advanced."""

    def __init__(self, aggregate_name: str, reason: str):
        super().__init__(
            message=f"Refresh of aggregate '{aggregate_name}' failed: {reason}",
            error_code="ERR_REFRESH_001",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"aggregate_name": aggregate_name, "reason": reason}
        )


class QueryUnavailable(AppException):
    """Raised when the requested source cannot answer a query."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_QUERY_001",
            status_code=status.HTTP_404_NOT_FOUND,
            details=details
        )


class ResourceNotFoundError(AppException):
    """Raised when requested reference data is not found."""

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id is not None:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code="ERR_NOT_FOUND_001",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id}
        )


# Global Exception Handlers

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for FastAPI HTTPException with standardized format."""
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        404: "ERR_NOT_FOUND",
        409: "ERR_CONFLICT",
        500: "ERR_INTERNAL_SERVER"
    }

    error_code = error_code_map.get(exc.status_code, "ERR_UNKNOWN")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": error_code,
            "message": exc.detail,
            "details": {}
        }
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for Pydantic validation errors on request parameters."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "ERR_VALIDATION",
            "message": "Validation error",
            "details": {
                "errors": [
                    {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
                    for err in exc.errors()
                ]
            }
        }
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled exception: %s: %s", type(exc).__name__, exc)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "ERR_INTERNAL_SERVER",
            "message": "An internal server error occurred",
            "details": {}
        }
    )
