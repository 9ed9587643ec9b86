"""Error taxonomy and the HTTP envelope it maps to."""

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class BlockhavenError(Exception):
    """Base class for every error surfaced through the API."""

    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code = "INTERNAL_ERROR"
    error = "Internal error"

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(BlockhavenError):
    """Caller-supplied request is missing or has invalid fields."""
    http_status = status.HTTP_400_BAD_REQUEST
    error_code = "VALIDATION_ERROR"
    error = "Invalid request"


class NotFound(BlockhavenError):
    http_status = status.HTTP_404_NOT_FOUND
    error_code = "NOT_FOUND"
    error = "Not found"


class ProviderError(BlockhavenError):
    """The provider answered with a structured error."""
    error_code = "PROVIDER_ERROR"
    error = "Exchange provider rejected the request"

    def __init__(
        self,
        message: str,
        provider_status: Optional[int] = None,
        provider_code: Optional[str] = None,
    ):
        super().__init__(message, details=message)
        self.provider_status = provider_status
        self.provider_code = provider_code

    @property
    def http_status(self) -> int:
        if self.provider_status is not None and self.provider_status >= 500:
            return status.HTTP_502_BAD_GATEWAY
        return status.HTTP_400_BAD_REQUEST


class ProviderUnavailable(BlockhavenError):
    """Network failure or timeout talking to the provider. Safe to retry."""
    error_code = "PROVIDER_UNAVAILABLE"
    error = "Exchange provider is unavailable"

    def __init__(self, message: str, timed_out: bool = False):
        super().__init__(message, details=message)
        self.timed_out = timed_out

    @property
    def http_status(self) -> int:
        if self.timed_out:
            return status.HTTP_504_GATEWAY_TIMEOUT
        return status.HTTP_502_BAD_GATEWAY


class ProviderContractViolation(BlockhavenError):
    """Successful status but the body lacks required fields."""
    http_status = status.HTTP_502_BAD_GATEWAY
    error_code = "PROVIDER_CONTRACT_VIOLATION"
    error = "Exchange provider returned an invalid response"


class PersistenceError(BlockhavenError):
    """Local database read or write failed."""
    error_code = "PERSISTENCE_ERROR"
    error = "Database operation failed"


class SyncInProgress(BlockhavenError):
    http_status = status.HTTP_409_CONFLICT
    error_code = "SYNC_IN_PROGRESS"
    error = "A catalog sync is already running"


class AuthenticationError(BlockhavenError):
    http_status = status.HTTP_401_UNAUTHORIZED
    error_code = "AUTHENTICATION_REQUIRED"
    error = "Authentication required"


class PermissionDenied(BlockhavenError):
    http_status = status.HTTP_403_FORBIDDEN
    error_code = "FORBIDDEN"
    error = "Forbidden: Admin access required"


def error_body(error: str, details: Optional[Any] = None) -> dict:
    body = {"success": False, "error": error}
    if details is not None:
        body["details"] = details
    return body


def register_exception_handlers(app: FastAPI) -> None:
    """Register the envelope-producing exception handlers."""

    @app.exception_handler(BlockhavenError)
    async def blockhaven_exception_handler(request: Request, exc: BlockhavenError) -> JSONResponse:
        if exc.http_status >= 500:
            logger.error(f"{exc.error_code} on {request.url.path}: {exc.message}")
        else:
            logger.warning(f"{exc.error_code} on {request.url.path}: {exc.message}")

        details = exc.details if exc.details is not None else exc.message
        return JSONResponse(
            status_code=exc.http_status,
            content=error_body(exc.error, details),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = []
        for error in exc.errors():
            field_path = ".".join(str(loc) for loc in error["loc"] if loc != "body")
            errors.append({"field": field_path, "message": error["msg"]})

        logger.warning(f"Validation error on {request.url.path}: {len(errors)} field(s) failed")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=error_body("Invalid request", errors),
        )
