from __future__ import annotations

import logging

import uvicorn

from .config import settings

logger = logging.getLogger("dailygrind")


def main() -> None:
    settings.ensure_directories()
    logger.info("Serving Daily Grind on %s:%s (timezone %s)", settings.host, settings.port, settings.timezone)
    uvicorn.run(
        "dailygrind.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
