"""Module executed when running ``python -m fastflix``."""

from __future__ import annotations

import logging

import uvicorn

from app.config import settings

logger = logging.getLogger("fastflix")


def main() -> None:
    """Serve the recommendation API with uvicorn."""

    logger.info(
        "Starting %s on %s:%s (%s)",
        settings.app_name,
        settings.server_host,
        settings.server_port,
        settings.environment,
    )
    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
        log_level="info",
    )


if __name__ == "__main__":  # pragma: no cover - runtime entrypoint
    main()
