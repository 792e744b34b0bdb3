"""
Logging configuration module
"""

import sys

from loguru import logger

from amico.core.settings import Settings, settings as default_settings


def setup_logging(config: Settings = default_settings) -> None:
    """configure logging system"""
    import logging

    # remove default log handler
    logger.remove()

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logger.add(
        sys.stderr,
        level="DEBUG" if config.debug else config.log_level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    )

    if config.log_file:
        logger.add(
            config.log_file,
            level=config.log_level,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
            rotation="1 day",
            retention="30 days",
        )
