"""
Keepsake - Database Retry Logic
Exponential backoff retry for database operations
"""

import time
import sqlite3
from typing import TypeVar, Callable
from functools import wraps

from core.logger import log_warning, log_error

T = TypeVar('T')

RETRYABLE_MESSAGES = ("locked", "busy")


class DatabaseRetryExhausted(Exception):
    """Raised when all retry attempts are exhausted."""
    pass


def _is_retryable(error: sqlite3.OperationalError, retryable: tuple) -> bool:
    error_msg = str(error).lower()
    return any(fragment in error_msg for fragment in retryable)


def db_retry(
    max_retries: int = 5,
    initial_delay: float = 0.1,
    backoff_multiplier: float = 2.0,
    max_delay: float = 10.0,
    retryable_errors: tuple = RETRYABLE_MESSAGES
):
    """
    Decorator for retrying database operations with exponential backoff.

    Only SQLite "database is locked" / "busy" errors are retried; anything
    else propagates immediately.

    Args:
        max_retries: Maximum number of retry attempts
        initial_delay: Initial delay in seconds
        backoff_multiplier: Multiplier for each retry
        max_delay: Maximum delay between retries
        retryable_errors: Error message substrings that trigger retry
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            delay = initial_delay
            last_error = None

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)

                except sqlite3.OperationalError as e:
                    if not _is_retryable(e, retryable_errors) or attempt >= max_retries:
                        if attempt > 0:
                            log_error(
                                f"Database operation failed after {attempt + 1} attempts: {e}"
                            )
                        raise

                    last_error = e
                    log_warning(
                        f"Database locked in {func.__name__} "
                        f"(attempt {attempt + 1}/{max_retries + 1}), retrying in {delay:.2f}s..."
                    )
                    time.sleep(delay)
                    delay = min(delay * backoff_multiplier, max_delay)

            raise DatabaseRetryExhausted(
                f"Max retries ({max_retries}) exhausted. Last error: {last_error}"
            )

        return wrapper
    return decorator


def execute_with_retry(
    func: Callable[[], T],
    max_retries: int = 5,
    initial_delay: float = 0.1,
    backoff_multiplier: float = 2.0,
    max_delay: float = 10.0
) -> T:
    """
    Execute a zero-argument database callable with retry logic.

    Used for ad-hoc multi-statement work (status marking) that isn't a
    decorated method.

    Raises:
        DatabaseRetryExhausted: If all retries fail
    """
    delay = initial_delay

    for attempt in range(max_retries + 1):
        try:
            return func()

        except sqlite3.OperationalError as e:
            if not _is_retryable(e, RETRYABLE_MESSAGES):
                raise

            if attempt >= max_retries:
                log_error(f"Database operation failed after {attempt + 1} attempts: {e}")
                raise DatabaseRetryExhausted(
                    f"Max retries ({max_retries}) exhausted. Last error: {e}"
                ) from e

            log_warning(
                f"Database locked (attempt {attempt + 1}/{max_retries + 1}), "
                f"retrying in {delay:.2f}s..."
            )
            time.sleep(delay)
            delay = min(delay * backoff_multiplier, max_delay)

    raise DatabaseRetryExhausted(f"Max retries ({max_retries}) exhausted")
