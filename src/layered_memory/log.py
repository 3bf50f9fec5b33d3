"""Loguru sink setup."""

from __future__ import annotations

import sys

from loguru import logger

_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def setup_logging(level: str = "INFO", sink=sys.stderr) -> int:
    """Replace loguru's default handler with one at *level*.

    Args:
        level: Minimum log level name.
        sink: Any loguru sink (stream, path, callable).

    Returns:
        The id of the installed handler.
    """
    logger.remove()
    return logger.add(sink, level=level.upper(), format=_FORMAT)
