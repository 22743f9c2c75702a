"""Loguru sink configuration."""

from __future__ import annotations

import sys

from loguru import logger

HUMAN_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


def configure_logging(level: str = "INFO", json: bool = False, sink=None) -> int:
    """Replace loguru's default handler. Returns the new handler id."""
    logger.remove()
    handler_id = logger.add(
        sink or sys.stderr,
        level=level.upper(),
        serialize=json,
        format="{message}" if json else HUMAN_FORMAT,
        enqueue=False,
        backtrace=False,
    )
    logger.debug(f"Logging configured at {level.upper()} ({'json' if json else 'human'})")
    return handler_id


def configure_from_settings(settings=None) -> int:
    from attachery.infrastructure.settings import get_settings

    settings = settings or get_settings()
    return configure_logging(settings.log_level, settings.log_json)
