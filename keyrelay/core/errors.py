"""Application-level exception types.

This module defines domain errors used across the store, scheduler and
forwarder, enabling consistent error handling, logging, and API responses.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients."""

    retry_after: int
    upstream_host: str
    error_type: str


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ConfigError(AppError):
    """Raised when required configuration is missing; fatal at startup."""


class AuthenticationAppError(AppError):
    """Raised when the caller's bearer token is rejected."""


class RateLimitAppError(AppError):
    """Raised when every key in the pool is still cooling down."""


class NoKeyAvailableAppError(AppError):
    """Raised when the pool holds no keys at all."""


class UpstreamAppError(AppError):
    """Raised when the upstream call fails at the transport level."""


def invalid_credentials_error() -> AuthenticationAppError:
    return AuthenticationAppError(
        code="invalid_api_key",
        message="Invalid authentication credentials",
    )
