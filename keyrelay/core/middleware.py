"""HTTP middleware for request ID propagation and correlation.

The middleware:
- Accepts an incoming request id header or generates a UUID
- Stores request_id in contextvars so every log line of the request carries it
- Adds request id and duration headers to the response unless the upstream
  already sent headers of the same name
- Clears context after request completion to prevent context leaks

Usage:
    app.middleware("http")(request_id_middleware(cfg.log.request_id_header))
"""

from __future__ import annotations

import time
import uuid
from typing import Awaitable, Callable

from fastapi import Request, Response

from keyrelay.core.logging import clear_request_id, set_request_id

CallNext = Callable[[Request], Awaitable[Response]]


def request_id_middleware(
    header_name: str = "X-Request-ID",
) -> Callable[[Request, CallNext], Awaitable[Response]]:
    """Build middleware that tags each request with a correlation id.

    Args:
        header_name: Header read from the request and echoed on the response.

    Returns:
        An ``http`` middleware function for ``app.middleware``.
    """

    async def middleware(request: Request, call_next: CallNext) -> Response:
        request_id = request.headers.get(header_name) or str(uuid.uuid4())
        set_request_id(request_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            clear_request_id()

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers.setdefault(header_name, request_id)
        response.headers.setdefault("X-Request-Duration-ms", f"{duration_ms:.2f}")
        return response

    return middleware
