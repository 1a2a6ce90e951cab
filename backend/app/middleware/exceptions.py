"""Domain exceptions and the handlers that turn them into error responses.

Services raise the typed exceptions below; the handlers registered on the
app render every error in one envelope so callers can branch on ``code``.
"""

import logging
import traceback
from typing import Union

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class CanopyTrackException(Exception):
    """Base exception for CanopyTrack application errors."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: str = "INTERNAL_ERROR",
        details: dict | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details
        super().__init__(self.message)


class NotFoundError(CanopyTrackException):
    """A referenced batch, pod, recipe, job, … does not exist."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="NOT_FOUND",
        )


class ValidationError(CanopyTrackException):
    """Input violates a business rule (bad weight, empty reason, …)."""

    def __init__(self, message: str, error_code: str = "VALIDATION_ERROR", details: dict | None = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_code=error_code,
            details=details,
        )


class UnknownStageError(CanopyTrackException):
    def __init__(self, domain: str, stage: str):
        super().__init__(
            message=f"Unknown {domain} stage: {stage!r}",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_code="UNKNOWN_STAGE",
        )


class ConflictError(CanopyTrackException):
    """Base for state conflicts — the request is valid but the batch's
    current state does not allow it."""

    def __init__(self, message: str, error_code: str, details: dict | None = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            error_code=error_code,
            details=details,
        )


class InvalidTransitionError(ConflictError):
    def __init__(self, from_stage: str, to_stage: str, allowed: list[str]):
        super().__init__(
            message=(
                f"Cannot transition from {from_stage} to {to_stage}. "
                f"Allowed: {', '.join(allowed) or 'none'}"
            ),
            error_code="INVALID_TRANSITION",
            details={"from": from_stage, "to": to_stage, "allowed": allowed},
        )


class NoOpTransitionError(ConflictError):
    def __init__(self, stage: str):
        super().__init__(
            message=f"Batch is already in stage {stage}",
            error_code="NOOP_TRANSITION",
        )


class TerminalStateError(ConflictError):
    def __init__(self, batch_number: str, batch_status: str):
        super().__init__(
            message=f"Batch {batch_number} is {batch_status}; no further changes are allowed",
            error_code="TERMINAL_STATE",
        )


class QuarantineBlockedError(ConflictError):
    def __init__(self, batch_number: str, operation: str):
        super().__init__(
            message=f"Batch {batch_number} is quarantined; release it before {operation}",
            error_code="QUARANTINE_BLOCKED",
        )


class QuarantineOverrideRequiredError(ConflictError):
    def __init__(self, batch_number: str):
        super().__init__(
            message=(
                f"Batch {batch_number} is quarantined; destroying it requires "
                f"an explicit quarantine override"
            ),
            error_code="QUARANTINE_OVERRIDE_REQUIRED",
        )


class CapacityExceededError(ConflictError):
    def __init__(self, pod_name: str, capacity: int, occupied: int, requested: int):
        super().__init__(
            message=(
                f"Pod {pod_name} holds {occupied}/{capacity} plants; "
                f"cannot add {requested}"
            ),
            error_code="CAPACITY_EXCEEDED",
            details={"capacity": capacity, "occupied": occupied, "requested": requested},
        )


class DuplicateRecipeActiveError(ConflictError):
    def __init__(self, activation_id: str | None = None):
        super().__init__(
            message="Batch already has an active recipe; deactivate it first",
            error_code="DUPLICATE_RECIPE_ACTIVE",
            details={"active_activation_id": activation_id} if activation_id else None,
        )


class ConcurrentModificationError(ConflictError):
    def __init__(self, message: str = "Batch was modified by another request; reload and retry"):
        super().__init__(message=message, error_code="CONCURRENT_MODIFICATION")


class ExternalSyncFailure(CanopyTrackException):
    """Regulator call failed.  Raised and retried inside the sync worker
    only; never reaches the caller of the transition that queued the job."""

    def __init__(self, message: str):
        super().__init__(
            message=message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            error_code="EXTERNAL_SYNC_FAILURE",
        )


class InventoryPostingError(CanopyTrackException):
    """Inventory collaborator rejected a receipt.  Captured into a
    partial-success result by the harvest poster."""

    def __init__(self, message: str, error_code: str = "INVENTORY_POSTING_FAILED"):
        super().__init__(
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_code=error_code,
        )


def create_error_response(
    status_code: int,
    message: str,
    error_code: str = "ERROR",
    details: Union[dict, list, None] = None,
) -> JSONResponse:
    """Create standardized error response.

    Format:
    {
        "error": {
            "code": "ERROR_CODE",
            "message": "Human-readable error message",
            "details": {...}  // Optional additional details
        }
    }
    """
    content = {
        "error": {
            "code": error_code,
            "message": message,
        }
    }

    if details:
        content["error"]["details"] = details

    return JSONResponse(
        status_code=status_code,
        content=content,
    )


async def canopytrack_exception_handler(
    request: Request,
    exc: CanopyTrackException,
) -> JSONResponse:
    """Handle typed domain exceptions."""
    logger.warning(
        "Domain error %s on %s %s: %s",
        exc.error_code,
        request.method,
        request.url.path,
        exc.message,
    )

    return create_error_response(
        status_code=exc.status_code,
        message=exc.message,
        error_code=exc.error_code,
        details=exc.details,
    )


async def http_exception_handler(
    request: Request,
    exc: Union[HTTPException, StarletteHTTPException],
) -> JSONResponse:
    """Handle FastAPI HTTP exceptions."""
    if exc.status_code >= 500:
        logger.error(
            "HTTP %s on %s %s: %s",
            exc.status_code,
            request.method,
            request.url.path,
            exc.detail,
        )

    return create_error_response(
        status_code=exc.status_code,
        message=str(exc.detail),
        error_code=f"HTTP_{exc.status_code}",
    )


async def validation_exception_handler(
    request: Request,
    exc: Union[RequestValidationError, PydanticValidationError],
) -> JSONResponse:
    """Handle Pydantic request validation errors."""
    logger.warning("Validation error on %s", request.url.path)

    errors = []
    for error in exc.errors():
        field = " -> ".join(str(loc) for loc in error["loc"])
        errors.append({
            "field": field,
            "message": error["msg"],
            "type": error["type"],
        })

    return create_error_response(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        message="Validation error",
        error_code="VALIDATION_ERROR",
        details={"errors": errors},
    )


async def stale_data_exception_handler(
    request: Request,
    exc: StaleDataError,
) -> JSONResponse:
    """A versioned row changed under us — the caller must re-read."""
    logger.warning("Concurrent modification on %s: %s", request.url.path, exc)
    err = ConcurrentModificationError()
    return create_error_response(
        status_code=err.status_code,
        message=err.message,
        error_code=err.error_code,
    )


async def database_exception_handler(
    request: Request,
    exc: IntegrityError,
) -> JSONResponse:
    """Handle database integrity errors (unique violations, foreign key, etc.)."""
    logger.error("Database integrity error on %s: %s", request.url.path, exc)

    error_msg = str(exc.orig) if hasattr(exc, "orig") else str(exc)

    if "unique" in error_msg.lower():
        message = "A record with this value already exists"
        error_code = "DUPLICATE_RECORD"
    elif "foreign key" in error_msg.lower():
        message = "Referenced record does not exist"
        error_code = "FOREIGN_KEY_VIOLATION"
    elif "not null" in error_msg.lower():
        message = "Required field is missing"
        error_code = "NULL_VALUE_NOT_ALLOWED"
    else:
        message = "Database constraint violation"
        error_code = "INTEGRITY_ERROR"

    return create_error_response(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        message=message,
        error_code=error_code,
    )


async def operational_exception_handler(
    request: Request,
    exc: OperationalError,
) -> JSONResponse:
    """Handle database operational errors (connection issues, etc.)."""
    logger.error("Database operational error on %s: %s", request.url.path, exc)

    return create_error_response(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        message="Database temporarily unavailable. Please try again.",
        error_code="DATABASE_UNAVAILABLE",
    )


async def general_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle all other unhandled exceptions."""
    logger.error(
        "Unhandled exception on %s: %s",
        request.url.path,
        exc,
        extra={
            "path": request.url.path,
            "method": request.method,
            "traceback": traceback.format_exc(),
        },
        exc_info=True,
    )

    # Don't expose internal details
    return create_error_response(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        message="An unexpected error occurred. Please try again later.",
        error_code="INTERNAL_SERVER_ERROR",
    )


def register_exception_handlers(app):
    """Register all custom exception handlers with FastAPI app."""
    app.add_exception_handler(CanopyTrackException, canopytrack_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(PydanticValidationError, validation_exception_handler)
    app.add_exception_handler(StaleDataError, stale_data_exception_handler)
    app.add_exception_handler(IntegrityError, database_exception_handler)
    app.add_exception_handler(OperationalError, operational_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
