"""Global exception handlers for consistent error responses.

Every error leaves the proxy in the OpenAI-compatible envelope clients of
the upstream already understand:

    {"error": {"message": ..., "type": ..., "code": ..., "param": null}}

Design:
- AppError subclasses → appropriate HTTP status (401, 429, 502)
- Unexpected Exception → generic 500 (safety net)
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from keyrelay.core.errors import (
    AppError,
    AuthenticationAppError,
    NoKeyAvailableAppError,
    RateLimitAppError,
    UpstreamAppError,
)
from keyrelay.core.logging import get_request_id

logger = logging.getLogger(__name__)


# (status_code, error type) per domain error; first match wins.
_ERROR_MAPPING: tuple[tuple[type[AppError], int, str], ...] = (
    (AuthenticationAppError, 401, "invalid_request_error"),
    (RateLimitAppError, 429, "requests"),
    (NoKeyAvailableAppError, 429, "requests"),
    (UpstreamAppError, 502, "upstream_error"),
)


def error_body(message: str, error_type: str, code: str) -> dict:
    """Build the JSON error envelope."""

    return {
        "error": {
            "message": message,
            "type": error_type,
            "code": code,
            "param": None,
        }
    }


def _resolve_status(exc: AppError) -> tuple[int, str]:
    for error_cls, status_code, error_type in _ERROR_MAPPING:
        if isinstance(exc, error_cls):
            return status_code, error_type
    return 400, "invalid_request_error"


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Handle domain application errors.

    Rate limit errors carry ``details["retry_after"]`` which becomes the
    ``retry-after`` response header.

    Args:
        request: FastAPI request object.
        exc: AppError instance (or subclass).

    Returns:
        JSONResponse with appropriate status code and error envelope.
    """
    status_code, error_type = _resolve_status(exc)

    logger.warning(
        "app_error_handled",
        extra={
            "error_code": exc.code,
            "error_message": exc.message,
            "status_code": status_code,
            "has_details": bool(exc.details),
            "request_id": get_request_id(),
        },
    )

    headers: dict[str, str] = {}
    retry_after = (exc.details or {}).get("retry_after")
    if retry_after is not None:
        headers["retry-after"] = str(retry_after)

    return JSONResponse(
        status_code=status_code,
        content=error_body(exc.message, error_type, exc.code),
        headers=headers or None,
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback handler for unexpected errors (safety net).

    Logs the failure for debugging while returning a generic message, so no
    stack traces or upstream secrets reach the client.
    """
    logger.error(
        "unhandled_exception",
        extra={
            "error_type": type(exc).__name__,
            "error_msg": str(exc),
            "request_path": request.url.path,
            "request_method": request.method,
            "request_id": get_request_id(),
        },
    )

    return JSONResponse(
        status_code=500,
        content=error_body(
            "An unexpected error occurred. Please try again later.",
            "server_error",
            "internal_server_error",
        ),
    )


def setup_exception_handlers(app) -> None:
    """Register all exception handlers with the FastAPI app.

    Args:
        app: FastAPI application instance.
    """
    app.exception_handler(AppError)(app_error_handler)
    app.exception_handler(Exception)(general_exception_handler)
