"""Caller authentication.

Two strategies, selected once at startup by AUTH_MODE:

- ``static``: the bearer token must equal API_TOKEN; every stored key forms
  one implicit pool.
- ``pool``: the bearer token names the pool to lease from; a pool with no
  keys is indistinguishable from a wrong token.

The route never branches on the mode. It asks the authenticator for a pool
and, when that pool turns out to be empty, for the error to raise.
"""

from __future__ import annotations

import hmac
import logging
from abc import ABC, abstractmethod

from keyrelay.core.config import Settings
from keyrelay.core.errors import (
    AppError,
    ConfigError,
    NoKeyAvailableAppError,
    invalid_credentials_error,
)
from keyrelay.core.logging import fingerprint

logger = logging.getLogger(__name__)


def parse_bearer_token(value: str | None) -> str | None:
    """Extract the token from an ``Authorization: Bearer <token>`` header.

    Examples:
        >>> parse_bearer_token("Bearer abc")
        'abc'
        >>> parse_bearer_token("bearer  abc ")
        'abc'
        >>> parse_bearer_token("Basic abc") is None
        True
        >>> parse_bearer_token(None) is None
        True
    """
    if not value:
        return None
    parts = value.strip().split(None, 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    token = parts[1].strip()
    return token or None


class AbstractAuthenticator(ABC):
    """Interface for authentication strategies."""

    mode: str

    @abstractmethod
    def authenticate(self, authorization: str | None) -> str | None:
        """Resolve the pool a request may lease from.

        Args:
            authorization: Raw Authorization header value (may be None).

        Returns:
            Pool name, or None for the implicit pool.

        Raises:
            AuthenticationAppError: If the caller is not authenticated.
        """
        raise NotImplementedError

    @abstractmethod
    def unavailable_error(self, pool: str | None) -> AppError:
        """Error to raise when the resolved pool holds no keys."""
        raise NotImplementedError


class StaticTokenAuthenticator(AbstractAuthenticator):
    """Compare the bearer token against one shared secret."""

    mode = "static"

    def __init__(self, api_token: str) -> None:
        if not api_token:
            raise ValueError("api_token must be a non-empty string")
        self._expected = api_token.encode()

    def authenticate(self, authorization: str | None) -> str | None:
        token = parse_bearer_token(authorization)
        if token is None or not hmac.compare_digest(token.encode(), self._expected):
            logger.warning(
                "auth.failed",
                extra={
                    "mode": self.mode,
                    "token_present": token is not None,
                    "token_hash": fingerprint(token),
                },
            )
            raise invalid_credentials_error()
        return None

    def unavailable_error(self, pool: str | None) -> AppError:
        return NoKeyAvailableAppError(
            code="rate_limit_exceeded",
            message="No API keys available in database",
        )


class PoolTokenAuthenticator(AbstractAuthenticator):
    """Treat the bearer token as the name of a key pool."""

    mode = "pool"

    def authenticate(self, authorization: str | None) -> str | None:
        token = parse_bearer_token(authorization)
        if token is None:
            logger.warning(
                "auth.failed",
                extra={"mode": self.mode, "token_present": False},
            )
            raise invalid_credentials_error()
        return token

    def unavailable_error(self, pool: str | None) -> AppError:
        logger.warning(
            "auth.failed",
            extra={
                "mode": self.mode,
                "token_present": True,
                "token_hash": fingerprint(pool),
                "reason": "unknown_pool",
            },
        )
        return invalid_credentials_error()


def build_authenticator(cfg: Settings) -> AbstractAuthenticator:
    """Factory selecting the authentication strategy from configuration.

    Raises:
        ConfigError: If the mode is unknown or static mode lacks API_TOKEN.
    """
    mode = cfg.proxy.auth_mode.lower()

    if mode == "static":
        if not cfg.proxy.api_token:
            raise ConfigError(
                code="missing_api_token",
                message="API_TOKEN environment variable is required",
            )
        return StaticTokenAuthenticator(cfg.proxy.api_token)

    if mode == "pool":
        return PoolTokenAuthenticator()

    raise ConfigError(
        code="invalid_auth_mode",
        message=f"Unknown AUTH_MODE '{cfg.proxy.auth_mode}'. Supported modes: static, pool",
    )
