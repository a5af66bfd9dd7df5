"""
Logging helpers shared across the relay.

Every module logs through the package logger returned here. Private keys and
raw signatures are never passed to it.
"""

import logging
from typing import Optional

LOGGER_NAME = "pollrelay"

logger = logging.getLogger(LOGGER_NAME)


def setup_logger(level: int = logging.INFO, fmt: Optional[str] = None) -> logging.Logger:
    """
    Attach a stream handler to the package logger.

    Calling it again only updates the level, so repeated calls from
    servers and tests never duplicate output.

    Args:
        level: Logging level for the package logger.
        fmt: Optional format string for the handler.

    Returns:
        The configured package logger.
    """
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(
            fmt or "%(asctime)s %(levelname)s [%(name)s] %(message)s"
        ))
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger

