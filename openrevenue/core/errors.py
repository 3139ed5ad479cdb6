"""
Error Handling
==============

Standardized error codes and exception handlers.

Every error response has the same envelope::

    {"error": "<code>", "message": "...", "resolution": "...", "details": ...}

``resolution`` tells the client what to do about it: change the request,
retry later, or contact support.
"""

import logging
from typing import Any, Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class ErrorCodes:
    """Standardized error codes."""

    # Request
    INVALID_PAYLOAD = "invalid_payload"
    MISSING_APP_USER_ID = "missing_app_user_id"
    MISSING_PRODUCT_ID = "missing_product_id"

    # Tenant / admin auth
    MISSING_API_KEY = "missing_api_key"
    INVALID_API_KEY = "invalid_api_key"
    BASIC_AUTH_NOT_CONFIGURED = "basic_auth_not_configured"
    UNAUTHORIZED = "unauthorized"

    # Store verification
    RECEIPT_VALIDATION_FAILED = "receipt_validation_failed"
    STORE_NOT_CONFIGURED = "store_not_configured"
    STORE_UNAVAILABLE = "store_unavailable"

    # State
    INVARIANT_VIOLATION = "invariant_violation"

    # General
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    NOT_IMPLEMENTED = "not_implemented"
    METHOD_NOT_ALLOWED = "method_not_allowed"
    INTERNAL_ERROR = "internal_error"


class Resolution:
    """What the client should do about an error."""
    FIX_REQUEST = "fix_request"
    RETRY_LATER = "retry_later"
    CONTACT_SUPPORT = "contact_support"


def _default_resolution(status_code: int) -> str:
    if status_code == status.HTTP_503_SERVICE_UNAVAILABLE:
        return Resolution.RETRY_LATER
    if status_code >= 500:
        return Resolution.CONTACT_SUPPORT
    return Resolution.FIX_REQUEST


# =============================================================================
# Custom Exceptions
# =============================================================================

class AppException(HTTPException):
    """Base application exception with structured error response."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        resolution: Optional[str] = None,
        details: Any = None,
        headers: Optional[dict[str, str]] = None,
    ):
        self.code = code
        self.message = message
        self.resolution = resolution or _default_resolution(status_code)
        self.details = details

        detail: dict[str, Any] = {
            "error": code,
            "message": message,
            "resolution": self.resolution,
        }
        if details is not None:
            detail["details"] = details

        super().__init__(status_code=status_code, detail=detail, headers=headers)


class AuthenticationError(AppException):
    """Authentication-related errors."""

    def __init__(
        self,
        code: str = ErrorCodes.UNAUTHORIZED,
        message: str = "Authentication failed",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            code=code,
            message=message,
            **extra,
        )


class ForbiddenError(AppException):
    """Permission errors."""

    def __init__(
        self,
        code: str = ErrorCodes.INVALID_API_KEY,
        message: str = "Access denied",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            code=code,
            message=message,
            **extra,
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
    """Resource state conflicts."""

    def __init__(
        self,
        code: str = ErrorCodes.CONFLICT,
        message: str = "Resource conflict",
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
        code: str = ErrorCodes.INVALID_PAYLOAD,
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=code,
            message=message,
            **extra,
        )


class ServiceUnavailableError(AppException):
    """External service unavailable errors."""

    def __init__(
        self,
        code: str = ErrorCodes.STORE_UNAVAILABLE,
        message: str = "Service temporarily unavailable",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code=code,
            message=message,
            **extra,
        )


class ServerMisconfiguredError(AppException):
    """Server-side configuration is missing or invalid."""

    def __init__(self, code: str, message: str, **extra):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            code=code,
            message=message,
            resolution=Resolution.CONTACT_SUPPORT,
            **extra,
        )


class InvariantViolationError(AppException):
    """
    Durable state would break the one-active-row rule.

    Always fatal for the request; never retried in-engine.
    """

    def __init__(self, message: str, **extra):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            code=ErrorCodes.INVARIANT_VIOLATION,
            message=message,
            resolution=Resolution.CONTACT_SUPPORT,
            **extra,
        )


# Verification failure kind -> (status, code, resolution)
_VERIFICATION_FAILURE_MAP: dict[str, tuple[int, str, str]] = {
    "invalid_input": (
        status.HTTP_400_BAD_REQUEST,
        ErrorCodes.RECEIPT_VALIDATION_FAILED,
        Resolution.FIX_REQUEST,
    ),
    "rejected": (
        status.HTTP_400_BAD_REQUEST,
        ErrorCodes.RECEIPT_VALIDATION_FAILED,
        Resolution.FIX_REQUEST,
    ),
    "configuration": (
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        ErrorCodes.STORE_NOT_CONFIGURED,
        Resolution.CONTACT_SUPPORT,
    ),
    "unavailable": (
        status.HTTP_503_SERVICE_UNAVAILABLE,
        ErrorCodes.STORE_UNAVAILABLE,
        Resolution.RETRY_LATER,
    ),
}


class ReceiptValidationError(AppException):
    """
    A store verification failure surfaced to the client.

    The HTTP status depends on the failure kind: bad input or a store
    rejection is the client's problem (400), missing tenant store
    credentials is ours (500), a store timeout is transient (503).
    """

    def __init__(self, kind: str, reason: str, store: str, detail: Optional[str] = None):
        status_code, code, resolution = _VERIFICATION_FAILURE_MAP.get(
            kind, _VERIFICATION_FAILURE_MAP["rejected"]
        )
        self.kind = kind
        self.reason = reason
        details: dict[str, Any] = {"reason": reason, "store": store}
        if detail:
            details["detail"] = detail
        super().__init__(
            status_code=status_code,
            code=code,
            message=f"Receipt verification failed: {reason}",
            resolution=resolution,
            details=details,
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
        content=exc.detail,
        headers=exc.headers,
    )


async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Handler for standard HTTPException (including routing 404/405)."""
    if isinstance(exc.detail, dict) and "error" in exc.detail:
        content = exc.detail
    else:
        if exc.status_code == status.HTTP_404_NOT_FOUND:
            code = ErrorCodes.NOT_FOUND
        elif exc.status_code == status.HTTP_405_METHOD_NOT_ALLOWED:
            code = ErrorCodes.METHOD_NOT_ALLOWED
        else:
            code = "http_error"
        content = {
            "error": code,
            "message": str(exc.detail),
            "resolution": _default_resolution(exc.status_code),
        }

    return JSONResponse(
        status_code=exc.status_code,
        content=content,
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for request body / Pydantic validation errors."""
    errors = exc.errors() if hasattr(exc, "errors") else []
    if errors:
        first_error = errors[0]
        field = ".".join(str(loc) for loc in first_error.get("loc", []))
        message = f"{field}: {first_error.get('msg', 'Validation error')}"
    else:
        message = str(exc) or "Validation error"

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": ErrorCodes.INVALID_PAYLOAD,
            "message": message,
            "resolution": Resolution.FIX_REQUEST,
            "details": [
                {"loc": list(err.get("loc", [])), "msg": err.get("msg"), "type": err.get("type")}
                for err in errors
            ],
        },
    )


async def global_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception(
        "Unhandled error on %s %s: %s", request.method, request.url.path, type(exc).__name__
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": ErrorCodes.INTERNAL_ERROR,
            "message": "An unexpected error occurred",
            "resolution": Resolution.CONTACT_SUPPORT,
        },
    )


def setup_exception_handlers(app):
    """
    Register exception handlers with FastAPI app.

    Usage:
        from openrevenue.core.errors import setup_exception_handlers
        setup_exception_handlers(app)
    """
    from pydantic import ValidationError as PydanticValidationError
    from fastapi.exceptions import RequestValidationError

    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(PydanticValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
