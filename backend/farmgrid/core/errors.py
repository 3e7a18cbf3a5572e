# backend/farmgrid/core/errors.py
from typing import Any, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from farmgrid.core.logger import logger


class FarmGridError(Exception):
    """Base error carrying an HTTP status and a machine-readable code."""

    status_code = 500
    code = "INTERNAL"

    def __init__(self, message: str, *, code: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details


# --- input / validation (4xx, never retried) ---

class BadRequestError(FarmGridError):
    status_code = 400
    code = "BAD_REQUEST"


class InvalidCoordinateError(BadRequestError):
    code = "INVALID_COORDINATES"


class MissingCaptureMetadataError(BadRequestError):
    code = "CAPTURE_METADATA_MISSING"


class TimestampParseError(BadRequestError):
    code = "TIMESTAMP_UNPARSABLE"


class NoCompletedBlocksError(BadRequestError):
    code = "NO_COMPLETED_BLOCKS"


class ForbiddenError(FarmGridError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(FarmGridError):
    status_code = 404
    code = "NOT_FOUND"


# --- geometry / data (fatal to the operation) ---

class GeometryError(FarmGridError):
    status_code = 422
    code = "INVALID_GEOMETRY"


class EmptyGridError(FarmGridError):
    status_code = 422
    code = "EMPTY_GRID"


# --- state conflicts ---

class SessionStateError(FarmGridError):
    status_code = 409
    code = "SESSION_NOT_ACTIVE"


# --- transient infrastructure (safe to retry at the caller) ---

class StorageUnavailableError(FarmGridError):
    status_code = 503
    code = "STORAGE_UNAVAILABLE"


async def farmgrid_error_handler(request: Request, exc: FarmGridError) -> JSONResponse:
    logger.warning(
        exc.message,
        extra={
            "request_id": request.scope.get("request_id"),
            "method": request.method,
            "path": request.url.path,
            "code": exc.code,
            "status_code": exc.status_code,
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "status": "error",
            "error": {"message": exc.message, "code": exc.code, "details": exc.details},
        },
    )
