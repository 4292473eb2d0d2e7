import sys

from loguru import logger

from config import get_settings


def setup_logging() -> None:
    """Configure loguru sinks from settings."""
    settings = get_settings()

    logger.remove()
    logger.add(sys.stderr, level=settings.log_level)

    if settings.log_file:
        logger.add(
            settings.log_file,
            rotation="1 day",
            retention="7 days",
            level=settings.log_level,
            encoding="utf-8",
        )
