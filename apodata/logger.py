"""
Logging configuration
"""
import sys

from loguru import logger

from apodata.config import LOG_LEVEL


def setup_logger(level: str = LOG_LEVEL):
    """Configure the shared loguru logger and return it."""
    logger.remove()

    logger.add(
        sys.stderr,
        colorize=True,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level> | {extra}"
        ),
        level=level,
    )
    return logger


log = setup_logger()
