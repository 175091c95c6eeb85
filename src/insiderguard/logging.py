"""structlog setup shared by the API and the standalone worker."""

import logging
from typing import Any

import structlog

from insiderguard.config import Settings, get_settings

SERVICE_NAME = "insiderguard"


def log_level(settings: Settings) -> int:
    return logging.DEBUG if settings.debug else logging.INFO


def build_processors(settings: Settings) -> list[Any]:
    """Processor chain: console output in development, JSON lines elsewhere."""
    renderer: Any
    if settings.environment == "development":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        renderer,
    ]


def configure_logging(settings: Settings | None = None) -> None:
    """Configure structlog and bind the service fields to every log line."""
    settings = settings or get_settings()

    logging.basicConfig(level=log_level(settings), format="%(message)s")
    structlog.configure(
        processors=build_processors(settings),
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(
        service=SERVICE_NAME, environment=settings.environment
    )
