"""Structured logging configuration using loguru.

Room events are logged with bound context fields (``room_id``, ``event``,
``participant_id`` ...) so a log sink can filter and aggregate them.
"""

from __future__ import annotations

import sys
from typing import Any

from loguru import logger


DEFAULT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level> | "
    "{extra}"
)

VALID_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def setup_logging(log_level: str = "INFO", format_string: str | None = None) -> None:
    """Configure loguru to write structured records to stderr.

    Raises:
        ValueError: If log_level is not one of VALID_LEVELS
    """
    level = log_level.upper()
    if level not in VALID_LEVELS:
        raise ValueError(f"Invalid log level: '{log_level}'. Must be one of: {', '.join(VALID_LEVELS)}")

    logger.remove()
    logger.add(
        sys.stderr,
        format=format_string or DEFAULT_FORMAT,
        level=level,
        colorize=True,
        backtrace=True,
        diagnose=False,
    )
    logger.info(f"Logging configured: level={level}")


def log_room_event(message: str, room_id: str, event: str, level: str = "INFO", **extra_context: Any) -> None:
    """Emit one room lifecycle event with standard context fields.

    Usage:
        >>> log_room_event("Word accepted", room_id="r1", event="turn_accepted", sequence_number=3)
    """
    bound_logger = logger.bind(room_id=room_id, event=event, **extra_context)
    level = level.upper()
    if level not in VALID_LEVELS:
        level = "INFO"
    bound_logger.log(level, message)
