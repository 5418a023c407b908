from __future__ import annotations

import logging
import sys

import uvicorn

from keyrelay.core.app_factory import create_app
from keyrelay.core.config import settings, validate_settings
from keyrelay.core.errors import ConfigError

logger = logging.getLogger(__name__)

app = create_app()


def run() -> None:
    """Serve the proxy on the unix socket named by BIND_PATH."""

    try:
        validate_settings(settings)
    except ConfigError as exc:
        logger.error("config.invalid", extra={"error_code": exc.code, "error_message": exc.message})
        sys.exit(1)

    uvicorn.run(app, uds=settings.proxy.bind_path, log_config=None)


if __name__ == "__main__":
    run()
