"""
Decorators Module
Timing and single-flight decorators
"""

import functools
import time
from typing import Callable

from .constants import ALREADY_SYNCING
from .logger import logger


def timed(func: Callable):
    """
    Decorator to log execution time of a coroutine
    """
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        start_time = time.perf_counter()
        try:
            return await func(*args, **kwargs)
        finally:
            elapsed = time.perf_counter() - start_time
            logger.debug(f"{func.__name__} executed in {elapsed:.3f}s")

    return wrapper


def single_flight(func: Callable):
    """
    Reject a sync pass while another one holds the instance's ``_sync_lock``.

    The lock check and acquisition happen without yielding to the event
    loop, so two passes started back to back can never both get in. The
    rejected caller gets a result dict immediately instead of waiting.
    """
    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        if self._sync_lock.locked():
            logger.warning(f"{func.__name__} rejected: another sync pass is running")
            return {"success": False, "error": ALREADY_SYNCING}
        async with self._sync_lock:
            return await func(self, *args, **kwargs)

    return wrapper
