"""
Runtime Call Decorators

``retry`` re-runs flaky runtime commands such as image pulls; ``timed``
logs how long a lifecycle operation took.
"""

from __future__ import annotations

import functools
import logging
import time
from typing import Callable, Tuple, Type

logger = logging.getLogger(__name__)


def retry(
    attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    retry_on: Tuple[Type[Exception], ...] = (Exception,),
):
    """
    Re-run a call that failed with one of ``retry_on``.

    The wait starts at ``delay`` seconds and is multiplied by ``backoff``
    after each failure. The last failure propagates unchanged.

    Example:
        @retry(attempts=3, delay=5.0, retry_on=(CommandError,))
        def pull_latest(self, service):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            wait = delay
            for attempt in range(1, attempts + 1):
                try:
                    return func(*args, **kwargs)
                except retry_on as e:
                    if attempt == attempts:
                        logger.error(f"{func.__name__} gave up after {attempts} attempts: {e}")
                        raise
                    logger.warning(f"{func.__name__} attempt {attempt}/{attempts} failed, retrying in {wait:g}s: {e}")
                    time.sleep(wait)
                    wait *= backoff

        return wrapper
    return decorator


def timed(func: Callable) -> Callable:
    """Log the duration of ``func``, including failed calls."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start = time.perf_counter()
        try:
            return func(*args, **kwargs)
        finally:
            logger.debug(f"{func.__name__} took {time.perf_counter() - start:.3f}s")
    return wrapper
