"""
Error Handling
==============

Standardized error codes, the domain exception taxonomy, and exception
handlers.

Collaborator failures (platform APIs, stores) carry a ``retryable`` flag
so that callers and batch retriers can decide whether to back off and try
again. The core never retries on its own.
"""

import logging
from typing import Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class ErrorCodes:
    """Standardized error codes."""

    # Inbound notifications (NOTIF_001 - NOTIF_010)
    NOTIF_PARSE_FAILED = "NOTIF_001"
    NOTIF_SIGNATURE_INVALID = "NOTIF_002"
    NOTIF_UNAUTHORIZED = "NOTIF_003"

    # Lifecycle (LIFE_001 - LIFE_010)
    LIFE_INVALID_TRANSITION = "LIFE_001"
    LIFE_ALREADY_FINALIZED = "LIFE_002"

    # Refunds (REFUND_001 - REFUND_010)
    REFUND_NOT_FOUND = "REFUND_001"
    REFUND_ALREADY_ACTIVE = "REFUND_002"
    REFUND_AMOUNT_EXCEEDED = "REFUND_003"
    REFUND_PROCESSING_FAILED = "REFUND_004"

    # Payments
    PAYMENT_NOT_FOUND = "PAYMENT_001"

    # Platform collaborators
    PLATFORM_SERVICE_ERROR = "PLATFORM_001"
    PLATFORM_NETWORK_ERROR = "PLATFORM_002"
    PLATFORM_TIMEOUT = "PLATFORM_003"
    PLATFORM_AUTHORIZATION = "PLATFORM_004"

    # General
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"


# =============================================================================
# Custom Exceptions
# =============================================================================

class AppException(HTTPException):
    """Base application exception with structured error response."""

    retryable: bool = False

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        field: Optional[str] = None,
        **extra,
    ):
        self.code = code
        self.message = message
        self.field = field
        self.extra = extra

        detail = {
            "code": code,
            "message": message,
        }

        if field:
            detail["field"] = field

        detail.update(extra)

        super().__init__(status_code=status_code, detail=detail)

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ParseError(AppException):
    """Malformed or unverifiable inbound payload."""

    def __init__(
        self,
        message: str = "Malformed notification payload",
        code: str = ErrorCodes.NOTIF_PARSE_FAILED,
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=code,
            message=message,
            **extra,
        )


class InvalidTransition(AppException):
    """Requested state transition is not in the entity's transition table."""

    def __init__(
        self,
        entity: str,
        current: str,
        requested: str,
        code: str = ErrorCodes.LIFE_INVALID_TRANSITION,
        message: Optional[str] = None,
    ):
        self.entity = entity
        self.current = current
        self.requested = requested
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            code=code,
            message=message or f"{entity} cannot move from {current} to {requested}",
            current=current,
            requested=requested,
        )


class AlreadyFinalized(InvalidTransition):
    """Transition requested from a terminal state."""

    def __init__(self, entity: str, current: str, requested: str):
        super().__init__(
            entity,
            current,
            requested,
            code=ErrorCodes.LIFE_ALREADY_FINALIZED,
            message=f"{entity} is already finalized in {current}",
        )


class NotFoundError(AppException):
    """Resource not found errors."""

    def __init__(
        self,
        code: str = ErrorCodes.NOT_FOUND,
        message: str = "Resource not found",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            code=code,
            message=message,
            **extra,
        )


class ConflictError(AppException):
    """Resource conflict errors."""

    def __init__(
        self,
        code: str,
        message: str,
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            code=code,
            message=message,
            **extra,
        )


class ValidationError(AppException):
    """Validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        code: str = ErrorCodes.VALIDATION_ERROR,
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=code,
            message=message,
            field=field,
            **extra,
        )


class AuthorizationError(AppException):
    """Credentials rejected by a platform or an inbound caller. Never retryable."""

    def __init__(
        self,
        message: str = "Not authorized",
        code: str = ErrorCodes.PLATFORM_AUTHORIZATION,
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            code=code,
            message=message,
            **extra,
        )


class PlatformServiceError(AppException):
    """Platform API answered with an error."""

    retryable = True

    def __init__(
        self,
        message: str = "Platform service error",
        code: str = ErrorCodes.PLATFORM_SERVICE_ERROR,
        status_code: int = status.HTTP_502_BAD_GATEWAY,
        **extra,
    ):
        super().__init__(
            status_code=status_code,
            code=code,
            message=message,
            **extra,
        )


class NetworkError(PlatformServiceError):
    """Platform API could not be reached."""

    def __init__(self, message: str = "Platform unreachable", **extra):
        super().__init__(
            message=message,
            code=ErrorCodes.PLATFORM_NETWORK_ERROR,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            **extra,
        )


class PlatformTimeoutError(PlatformServiceError):
    """Platform API did not answer in time."""

    def __init__(self, message: str = "Platform request timed out", **extra):
        super().__init__(
            message=message,
            code=ErrorCodes.PLATFORM_TIMEOUT,
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            **extra,
        )


class RefundProcessingError(AppException):
    """Refund could not be completed by the platform."""

    def __init__(
        self,
        message: str,
        retryable: bool,
        refund_id: Optional[str] = None,
    ):
        self.retryable = retryable
        super().__init__(
            status_code=status.HTTP_502_BAD_GATEWAY,
            code=ErrorCodes.REFUND_PROCESSING_FAILED,
            message=message,
            retryable=retryable,
            refund_id=refund_id,
        )


# =============================================================================
# Exception Handlers
# =============================================================================

async def app_exception_handler(
    request: Request,
    exc: AppException,
) -> JSONResponse:
    """Handler for AppException."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.detail,
        },
    )


async def http_exception_handler(
    request: Request,
    exc: HTTPException,
) -> JSONResponse:
    """Handler for standard HTTPException."""
    # Check if detail is already structured
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        error = exc.detail
    else:
        error = {
            "code": "HTTP_ERROR",
            "message": str(exc.detail),
        }

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": error,
        },
    )


async def validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for request validation errors."""
    errors = exc.errors() if hasattr(exc, "errors") else []
    if errors:
        first_error = errors[0]
        field = ".".join(str(loc) for loc in first_error.get("loc", []))
        message = first_error.get("msg", "Validation error")
    else:
        field = None
        message = str(exc) or "Validation error"

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.VALIDATION_ERROR,
                "message": message,
                "field": field,
            },
        },
    )


async def global_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled error on %s: %s", request.url.path, exc)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.INTERNAL_ERROR,
                "message": "An unexpected error occurred",
            },
        },
    )


def setup_exception_handlers(app):
    """
    Register exception handlers with FastAPI app.

    Usage:
        from app.core.errors import setup_exception_handlers
        setup_exception_handlers(app)
    """
    from fastapi.exceptions import RequestValidationError

    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
