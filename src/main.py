"""Process entry point: configure logging and serve the listener with uvicorn."""

from __future__ import annotations

import logging

import uvicorn

from src.config import get_settings
from src.server import create_app


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    # uvicorn turns SIGINT/SIGTERM into a lifespan shutdown, which closes the browser.
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
