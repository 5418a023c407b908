"""Catch-all proxy route.

Every method on every path lands here: authenticate, lease a key, forward.
A request is rejected before any lease is made, or forwarded with exactly
one leased key; the upstream's answer is never retried on another key.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import Response

from keyrelay.adapters.key_store.base import LeaseStatus
from keyrelay.core.auth import AbstractAuthenticator
from keyrelay.core.errors import RateLimitAppError
from keyrelay.services.forwarder import UpstreamForwarder
from keyrelay.services.scheduler import Scheduler

router = APIRouter(tags=["Proxy"])

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def get_authenticator(request: Request) -> AbstractAuthenticator:
    return request.app.state.authenticator


def get_scheduler(request: Request) -> Scheduler:
    return request.app.state.scheduler


def get_forwarder(request: Request) -> UpstreamForwarder:
    return request.app.state.forwarder


@router.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
async def proxy(
    request: Request,
    authenticator: Annotated[AbstractAuthenticator, Depends(get_authenticator)],
    scheduler: Annotated[Scheduler, Depends(get_scheduler)],
    forwarder: Annotated[UpstreamForwarder, Depends(get_forwarder)],
    authorization: Annotated[str | None, Header()] = None,
) -> Response:
    """Forward the request upstream with the least recently used key.

    Raises:
        AuthenticationAppError: 401 when the bearer token is rejected.
        RateLimitAppError: 429 when every key in the pool is cooling down.
        NoKeyAvailableAppError: 429 when the static pool is empty.
        UpstreamAppError: 502 when the upstream cannot be reached.
    """
    pool = authenticator.authenticate(authorization)

    result = await scheduler.lease(pool)
    if result.status is LeaseStatus.NO_KEY_AVAILABLE:
        raise authenticator.unavailable_error(pool)
    if result.status is LeaseStatus.RATE_LIMITED:
        raise RateLimitAppError(
            code="rate_limit_exceeded",
            message="Rate limit reached for requests. All API keys have been used too recently.",
            details={"retry_after": result.retry_after_seconds},
        )

    return await forwarder.forward(request, result.credential)
