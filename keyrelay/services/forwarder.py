"""Upstream forwarding.

Rewrites an inbound request for the leased key and relays it to the key's
upstream. Bodies are streamed in both directions and never parsed, so the
proxy stays protocol-agnostic and never holds a whole payload in memory.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator, Iterable
from urllib.parse import urlsplit

import httpx
from fastapi import Request
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from keyrelay.adapters.key_store.base import Credential
from keyrelay.core.errors import UpstreamAppError

logger = logging.getLogger(__name__)

# Inbound headers that describe the hop to this proxy, not the upstream call.
STRIPPED_REQUEST_HEADERS = frozenset(
    {
        "host",
        "x-forwarded-for",
        "x-forwarded-host",
        "x-forwarded-proto",
        "x-forwarded-server",
        "x-real-ip",
        "x-scheme",
        "authorization",
    }
)

# Headers httpx adds on its own; dropped again unless the caller sent them.
_CLIENT_DEFAULT_HEADERS = ("accept", "accept-encoding", "user-agent")


def build_upstream_url(base_url: str, path: str, query: str = "") -> str:
    """Concatenate the key's base URL with the inbound path and query.

    Nothing is re-encoded: ``path`` and ``query`` are used exactly as they
    arrived on the wire.

    Examples:
        >>> build_upstream_url("https://api.example.com/v1", "/chat", "a=1")
        'https://api.example.com/v1/chat?a=1'
        >>> build_upstream_url("https://api.example.com", "/models")
        'https://api.example.com/models'
    """
    url = f"{base_url}{path}"
    if query:
        url = f"{url}?{query}"
    return url


def build_upstream_headers(
    headers: Iterable[tuple[str, str]], secret: str
) -> list[tuple[str, str]]:
    """Copy inbound headers for the upstream call and swap in the key.

    Repeated headers are preserved in order. Proxy-identifying headers and
    the caller's own authorization are dropped.

    Args:
        headers: Inbound (name, value) pairs.
        secret: Bearer value of the leased key.

    Returns:
        Outbound (name, value) pairs ending with ``authorization``.
    """
    outbound = [
        (name, value)
        for name, value in headers
        if name.lower() not in STRIPPED_REQUEST_HEADERS
    ]
    outbound.append(("authorization", f"Bearer {secret}"))
    return outbound


def _raw_target(request: Request) -> tuple[str, str]:
    raw_path = request.scope.get("raw_path")
    if raw_path:
        # some servers include the query in raw_path
        path = raw_path.split(b"?", 1)[0].decode("latin-1")
    else:
        path = request.url.path
    query = request.scope.get("query_string", b"").decode("latin-1")
    return path, query


def _has_body(request: Request) -> bool:
    return "content-length" in request.headers or "transfer-encoding" in request.headers


class UpstreamForwarder:
    """Relay requests to upstreams over one shared HTTP client."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    @classmethod
    def create(
        cls,
        *,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "UpstreamForwarder":
        """Build a forwarder with its own client.

        Args:
            timeout_seconds: Upstream timeout; None disables client timeouts.
            transport: Optional transport override (tests use httpx.MockTransport).
        """
        client = httpx.AsyncClient(
            timeout=timeout_seconds,
            transport=transport,
            follow_redirects=False,
        )
        return cls(client)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def forward(self, request: Request, credential: Credential) -> StreamingResponse:
        """Send ``request`` upstream with ``credential`` and relay the reply.

        The upstream status, header list and raw body bytes are returned
        unchanged. The upstream connection is released once the body has
        been relayed.

        Raises:
            UpstreamAppError: If the upstream cannot be reached or the
                connection fails before a response arrives.
        """
        path, query = _raw_target(request)
        url = build_upstream_url(credential.base_url, path, query)
        headers = build_upstream_headers(request.headers.items(), credential.secret)

        upstream_request = self._client.build_request(
            request.method,
            url,
            headers=headers,
            content=request.stream() if _has_body(request) else None,
        )
        sent = {name.lower() for name, _ in headers}
        for name in _CLIENT_DEFAULT_HEADERS:
            if name not in sent:
                upstream_request.headers.pop(name, None)

        upstream_host = urlsplit(credential.base_url).hostname or ""
        try:
            upstream = await self._client.send(upstream_request, stream=True)
        except httpx.HTTPError as exc:
            logger.warning(
                "upstream.request_failed",
                extra={
                    "credential_id": credential.id,
                    "upstream_host": upstream_host,
                    "error_type": type(exc).__name__,
                    "method": request.method,
                },
            )
            raise UpstreamAppError(
                code="upstream_unavailable",
                message="Upstream request failed",
                details={"upstream_host": upstream_host, "error_type": type(exc).__name__},
            ) from exc

        logger.info(
            "upstream.response",
            extra={
                "credential_id": credential.id,
                "upstream_host": upstream_host,
                "status_code": upstream.status_code,
                "method": request.method,
            },
        )

        # transports may hand back a response whose body is already in memory
        if upstream.is_stream_consumed:
            body: Iterable[bytes] | AsyncIterator[bytes] = iter([upstream.content])
        else:
            body = upstream.aiter_raw()

        response = StreamingResponse(
            body,
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        # verbatim header list, repeats included (e.g. set-cookie)
        response.raw_headers = [(name.lower(), value) for name, value in upstream.headers.raw]
        return response
