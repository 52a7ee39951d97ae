"""Retry mechanisms for SQLite operations."""

import functools
import sqlite3
import time
from typing import Any, Callable, TypeVar

from blobsync.core.logging import get_logger

logger = get_logger("blobsync.retry")

T = TypeVar("T")

_LOCK_MESSAGES = (
    "database is locked",
    "database table is locked",
    "cannot start a transaction within a transaction",
)
_PERMANENT_MESSAGES = ("no such table", "no such column", "syntax error")


def is_retryable(error: Exception, retry_on: tuple[type[Exception], ...]) -> bool:
    """Decide whether ``error`` is worth another attempt.

    Lock contention is always retried; schema errors never are.
    """
    if not isinstance(error, retry_on) or isinstance(error, sqlite3.IntegrityError):
        return False
    if isinstance(error, sqlite3.OperationalError):
        message = str(error).lower()
        if any(text in message for text in _LOCK_MESSAGES):
            return True
        if any(text in message for text in _PERMANENT_MESSAGES):
            return False
    return True


def with_db_retry(
    max_retries: int = 5,
    base_delay: float = 0.1,
    max_delay: float = 2.0,
    backoff_factor: float = 2.0,
    retry_on: tuple[type[Exception], ...] = (sqlite3.OperationalError,),
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator that adds retry logic with exponential backoff for database operations.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        backoff_factor: Multiplier for exponential backoff
        retry_on: Tuple of exception types to retry on

    Returns:
        Decorated function with retry logic
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    if attempt >= max_retries or not is_retryable(e, retry_on):
                        raise

                    delay = min(base_delay * (backoff_factor**attempt), max_delay)
                    logger.debug(
                        "db_operation_retry",
                        operation=func.__name__,
                        attempt=attempt + 1,
                        max_attempts=max_retries + 1,
                        delay=round(delay, 3),
                        error=str(e),
                    )
                    time.sleep(delay)
                    attempt += 1

        return wrapper

    return decorator


def with_transaction_retry(func: Callable[..., T]) -> Callable[..., T]:
    """Decorator specifically for SQLite transaction operations.

    Uses more aggressive retry settings for transaction-level operations
    that are more likely to encounter locks.
    """
    return with_db_retry(
        max_retries=8,
        base_delay=0.05,
        max_delay=1.0,
        backoff_factor=1.5,
        retry_on=(sqlite3.OperationalError, sqlite3.DatabaseError),
    )(func)


def with_connection_retry(func: Callable[..., T]) -> Callable[..., T]:
    """Decorator for SQLite connection operations.

    Uses moderate retry settings for connection-level operations.
    """
    return with_db_retry(
        max_retries=5,
        base_delay=0.1,
        max_delay=2.0,
        backoff_factor=2.0,
        retry_on=(sqlite3.OperationalError,),
    )(func)
