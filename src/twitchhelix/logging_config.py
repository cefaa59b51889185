"""Logging setup for applications embedding the SDK."""

from __future__ import annotations

import logging
import os
from typing import Optional
from typing import Union

LOGGER_NAME = "twitchhelix"
DEFAULT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(
    level: Optional[Union[int, str]] = None,
    fmt: str = DEFAULT_FORMAT,
) -> logging.Logger:
    """Attach a stream handler to the package logger.

    Args:
        level: Log level; defaults to ``TWITCH_LOG_LEVEL`` or INFO
        fmt: Log record format

    Returns:
        The package logger
    """
    if level is None:
        level = os.getenv("TWITCH_LOG_LEVEL", "INFO").upper()

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    if not any(getattr(h, "_twitchhelix", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(fmt))
        handler._twitchhelix = True  # type: ignore[attr-defined]
        logger.addHandler(handler)

    return logger
