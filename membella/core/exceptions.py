"""Application error taxonomy and FastAPI exception handlers.

Every domain error carries the HTTP status it maps to, so routers raise
domain errors and the handlers registered here render them as
``{"success": false, "message", "code", "details"?}``.
"""

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from membella.core.config import settings

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request"


class InvalidPaymentMethod(ValidationError):
    default_message = "Invalid payment method. Must be 'card' or 'promptpay'"


class InvalidPaymentSource(ValidationError):
    default_message = "Invalid payment source"


class InvalidEventStructure(ValidationError):
    default_message = "Invalid webhook event structure"


class AuthenticationError(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Authentication required"


class UnverifiedEvent(AuthenticationError):
    default_message = "Webhook event could not be verified"


class AuthorizationError(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Access denied"


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found"


class PlanNotFound(NotFoundError):
    default_message = "Plan not found"


class PaymentNotFound(NotFoundError):
    default_message = "Payment not found"


class ConflictError(AppError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Resource conflict"


class DuplicateActiveSubscription(ConflictError):
    default_message = "You already have an active subscription to this plan"


class GatewayError(AppError):
    """Error reported by (or while reaching) the payment gateway.

    Declines surface as 402, malformed card data as 400 and an unreachable
    gateway as 502. The gateway's own message is kept as ``message``.
    """

    status_code = status.HTTP_402_PAYMENT_REQUIRED
    default_message = "Payment failed"

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.code = code
        if status_code is not None:
            self.status_code = status_code


class PollTimeout(AppError):
    """Polling exhausted its attempts before the payment became terminal."""

    status_code = status.HTTP_408_REQUEST_TIMEOUT
    default_message = "Payment status polling timed out"

    def __init__(self, last_status: str, attempts: int):
        super().__init__(
            f"Payment still {last_status} after {attempts} attempt(s)",
            details={"lastStatus": last_status, "attempts": attempts},
        )
        self.last_status = last_status
        self.attempts = attempts


class InternalError(AppError):
    pass


def create_error_response(
    status_code: int,
    message: str,
    details: Optional[Any] = None,
) -> dict:
    """Build the standard error body."""
    response: dict[str, Any] = {
        "success": False,
        "message": message,
        "code": status_code,
    }
    if details:
        response["details"] = details
    return response


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render a taxonomy error with its own status code."""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"{type(exc).__name__}: {exc.message}",
        extra={
            "method": request.method,
            "path": request.url.path,
            "status_code": exc.status_code,
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(exc.status_code, exc.message, exc.details),
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handles StarletteHTTPException (which includes FastAPI's HTTPException)."""
    logger.warning(
        f"HTTP Exception: {exc.status_code} - {exc.detail}",
        extra={"method": request.method, "path": request.url.path},
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(exc.status_code, str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handles request body and query validation errors."""
    error_details = []
    for error in exc.errors():
        field = ".".join(map(str, error["loc"]))
        error_details.append(f"Field '{field}': {error['msg']}")

    logger.warning(
        "Request validation failed",
        extra={"method": request.method, "path": request.url.path, "errors": error_details},
    )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=create_error_response(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "Validation failed",
            {"errors": error_details},
        ),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handles any other unhandled exception as a 500.

    Exception details are only exposed outside production.
    """
    logger.error(
        f"Unhandled exception: {exc}",
        exc_info=exc,
        extra={"method": request.method, "path": request.url.path},
    )
    details = None
    if not settings.is_production:
        details = {"type": type(exc).__name__, "error": str(exc)}
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=create_error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "An unexpected internal server error occurred.",
            details,
        ),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI app."""
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
