import sys
from typing import Optional

from loguru import logger


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level, format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {name} | {message}")
    if log_file:
        logger.add(
            log_file,
            rotation="500 MB",
            retention="10 days",
            level=level,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
        )
