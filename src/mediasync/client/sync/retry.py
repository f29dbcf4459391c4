"""Retry logic with exponential backoff.

This module provides:
- retry_with_backoff: Bounded per-item retry with exponential backoff
- RetryCancelledError: Raised when a cancel arrives while waiting to retry
- backoff_delay: Delay before the n-th whole-pass retry
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

# Default per-item retry configuration
DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_BACKOFF = 1.0  # seconds
DEFAULT_MAX_BACKOFF = 60.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0

# Whole-pass retry configuration (used by the scheduler)
PASS_RETRY_BASE_DELAY = 30.0  # seconds
PASS_RETRY_MAX_DELAY = 60.0 * 60.0  # seconds


class RetryCancelledError(Exception):
    """Cancelled while waiting between attempts.

    The last attempt's error is chained as __cause__.
    """


def retry_with_backoff(
    func: Callable[[], Any],
    max_retries: int = DEFAULT_MAX_RETRIES,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    max_backoff: float = DEFAULT_MAX_BACKOFF,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
    cancel_event: threading.Event | None = None,
) -> Any:
    """Execute a function with exponential backoff retry.

    Args:
        func: Function to execute.
        max_retries: Maximum number of retry attempts.
        initial_backoff: Initial backoff time in seconds.
        max_backoff: Maximum backoff time in seconds.
        backoff_multiplier: Multiplier for each retry.
        retryable_exceptions: Tuple of exception types to retry on.
        cancel_event: Optional event; when set during a backoff wait, no
            further attempt is made.

    Returns:
        Result of the function.

    Raises:
        RetryCancelledError: If cancel_event was set while waiting to retry.
        The last exception if all retries fail.
    """
    backoff = initial_backoff

    for attempt in range(max_retries + 1):
        try:
            return func()
        except retryable_exceptions as e:
            if attempt == max_retries:
                logger.error(f"All {max_retries} retries failed: {e}")
                raise

            logger.warning(
                f"Attempt {attempt + 1}/{max_retries + 1} failed: {e}. "
                f"Retrying in {backoff:.1f}s..."
            )
            if cancel_event is not None:
                if cancel_event.wait(backoff):
                    logger.info("Retry cancelled")
                    raise RetryCancelledError(str(e)) from e
            else:
                time.sleep(backoff)
            backoff = min(backoff * backoff_multiplier, max_backoff)

    raise RuntimeError("Unexpected retry loop exit")


def backoff_delay(
    attempt: int,
    base_delay: float = PASS_RETRY_BASE_DELAY,
    max_delay: float = PASS_RETRY_MAX_DELAY,
) -> float:
    """Delay before the given retry attempt (1-based), doubling each time.

    >>> backoff_delay(1), backoff_delay(2), backoff_delay(3)
    (30.0, 60.0, 120.0)
    """
    if attempt < 1:
        return 0.0
    return min(base_delay * (2 ** (attempt - 1)), max_delay)
