"""Application factory for the proxy.

Builds the FastAPI app and wires the key store, scheduler, authenticator and
forwarder into ``app.state`` during the lifespan, so each is opened once at
startup and released at shutdown.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

import httpx
from fastapi import FastAPI

from keyrelay.adapters.key_store.base import AbstractKeyStore
from keyrelay.adapters.key_store.sqlite import SQLiteKeyStore
from keyrelay.api.routes import proxy_router
from keyrelay.core.auth import build_authenticator
from keyrelay.core.config import Settings, settings as default_settings, validate_settings
from keyrelay.core.errors import ConfigError
from keyrelay.core.exception_handlers import setup_exception_handlers
from keyrelay.core.logging import configure_logging
from keyrelay.core.middleware import request_id_middleware
from keyrelay.services.forwarder import UpstreamForwarder
from keyrelay.services.scheduler import Scheduler, now_ms

logger = logging.getLogger(__name__)


def create_app(
    cfg: Settings | None = None,
    *,
    store: AbstractKeyStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    clock: Callable[[], int] = now_ms,
    setup_logging: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        cfg: Settings to use; defaults to the process-wide settings.
        store: Key store to serve from; defaults to a SQLite store at
            DATABASE_PATH. An injected store is not closed at shutdown.
        transport: Optional httpx transport for upstream calls.
        clock: Time source in epoch milliseconds for the scheduler.
        setup_logging: Whether to (re)configure the root logger.

    Returns:
        Configured FastAPI app.
    """
    cfg = cfg or default_settings

    # Logging first so subsequent init logs are formatted as desired
    if setup_logging:
        configure_logging(cfg.log)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        validate_settings(cfg, require_bind_path=False)

        key_store = store or SQLiteKeyStore(cfg.proxy.database_path)
        owns_store = store is None
        key_store.initialize()

        authenticator = build_authenticator(cfg)
        if authenticator.mode == "static" and key_store.count() == 0:
            if owns_store:
                key_store.close()
            raise ConfigError(
                code="no_keys_configured",
                message="No API keys available in database",
            )

        forwarder = UpstreamForwarder.create(
            timeout_seconds=cfg.proxy.upstream_timeout_seconds,
            transport=transport,
        )
        app.state.authenticator = authenticator
        app.state.scheduler = Scheduler(
            key_store, cooldown_ms=cfg.proxy.rate_limit_ms, clock=clock
        )
        app.state.forwarder = forwarder

        logger.info(
            "app.started",
            extra={
                "auth_mode": authenticator.mode,
                "keys": key_store.count(),
                "rate_limit_ms": cfg.proxy.rate_limit_ms,
            },
        )
        try:
            yield
        finally:
            await forwarder.aclose()
            if owns_store:
                key_store.close()
            logger.info("app.stopped")

    app = FastAPI(
        title="keyrelay",
        description="Reverse proxy rotating upstream API keys by least-recent use.",
        version="0.1.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    app.middleware("http")(request_id_middleware(cfg.log.request_id_header))
    setup_exception_handlers(app)
    app.include_router(proxy_router)

    return app
