# Utils Package
# Utility Functions and Helpers

from .logger import logger, setup_logger
from .decorators import single_flight, timed

__all__ = [
    "logger",
    "setup_logger",
    "single_flight",
    "timed"
]
