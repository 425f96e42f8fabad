"""Loguru sink configuration shared by the CLI and long-running processes."""

import sys
from typing import Optional

from loguru import logger

LOGGER_FORMAT = (
    "<green>{time:MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Replace loguru's default sink with the pipeline format.

    Args:
        level: Minimum level for stderr (and the file sink, if any)
        log_file: Optional path; rotated at 10 MB, kept for 10 days
    """
    logger.remove()
    logger.add(sys.stderr, level=level, format=LOGGER_FORMAT)
    if log_file:
        logger.add(
            log_file,
            level=level,
            format=LOGGER_FORMAT,
            rotation="10 MB",
            retention="10 days",
            enqueue=True,
        )
