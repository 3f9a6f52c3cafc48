"""
Logging setup shared by the API server and scripts.
"""
import logging
import sys


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: str = "INFO") -> logging.Logger:
    """
    Configure the ``branchchat`` logger hierarchy.

    Args:
        level: Log level name (DEBUG, INFO, ...)

    Returns:
        The package root logger
    """
    logger = logging.getLogger("branchchat")
    logger.setLevel(level.upper())

    # Avoid stacking handlers when the app is created more than once
    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(handler)
    logger.propagate = False
    return logger
