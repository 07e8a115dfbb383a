"""
Logger Module
Centralized logging using Loguru
"""

import sys
from pathlib import Path
from loguru import logger as _logger

from ..config import LoggingConfig


CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{module}</cyan>:<cyan>{function}</cyan> | <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {module}:{function} | {message}"


def setup_logger(settings: LoggingConfig) -> None:
    """Configure console and rotating file sinks from the logging section"""
    _logger.remove()

    if settings.console:
        _logger.add(
            sys.stdout,
            level=settings.level,
            format=CONSOLE_FORMAT,
            colorize=settings.colorize
        )

    # An empty path keeps logging on the console only
    if settings.file:
        Path(settings.file).parent.mkdir(parents=True, exist_ok=True)
        _logger.add(
            settings.file,
            level=settings.level,
            format=FILE_FORMAT,
            rotation=f"{settings.max_size} MB",
            retention=settings.backup_count,
            encoding="utf-8"
        )


logger = _logger
