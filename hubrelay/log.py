"""Logging configuration"""

import sys

from loguru import logger

FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{extra[component]}</cyan> - <level>{message}</level>"
)


def configure_logging(level: str = "INFO", json: bool = False) -> None:
    """Replace loguru's default sink with one stderr sink."""
    logger.remove()
    logger.configure(extra={"component": "hubrelay"})
    if json:
        logger.add(sys.stderr, level=level.upper(), serialize=True)
    else:
        logger.add(sys.stderr, level=level.upper(), format=FORMAT, colorize=None)
