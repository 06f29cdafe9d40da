"""
Utility functions for the mystery box backend.
Includes retry decorators and small sanitizing helpers.
"""
import asyncio
import functools
import logging
import random
import time
from typing import Callable, Type, Tuple, Optional, Any
from sqlalchemy.exc import (
    OperationalError,
    InterfaceError,
    TimeoutError as SQLAlchemyTimeoutError,
    DisconnectionError,
)

logger = logging.getLogger(__name__)

# Transient database errors that should be retried
TRANSIENT_DB_ERRORS: Tuple[Type[Exception], ...] = (
    OperationalError,
    InterfaceError,
    SQLAlchemyTimeoutError,
    DisconnectionError,
    ConnectionError,
    TimeoutError,
)


def is_transient_error(exc: Exception) -> bool:
    """Check if an exception is a transient error that should be retried."""
    if isinstance(exc, TRANSIENT_DB_ERRORS):
        return True

    error_msg = str(exc).lower()
    transient_patterns = [
        "connection refused",
        "connection reset",
        "connection timed out",
        "timeout",
        "too many connections",
        "server closed the connection",
        "could not connect",
        "temporarily unavailable",
        "restart transaction",  # CockroachDB specific
        "40001",  # Serialization failure (PostgreSQL/CockroachDB)
    ]
    return any(pattern in error_msg for pattern in transient_patterns)


def _backoff_delay(attempt: int, base_delay: float, max_delay: float, exponential_backoff: bool, jitter: bool) -> float:
    if exponential_backoff:
        delay = min(base_delay * (2 ** attempt), max_delay)
    else:
        delay = base_delay
    if jitter:
        delay = delay * (0.5 + random.random())  # 50-150% of delay
    return delay


def _should_retry(exc: Exception, retry_on: Optional[Tuple[Type[Exception], ...]]) -> bool:
    if retry_on:
        return isinstance(exc, retry_on)
    return is_transient_error(exc)


def retry_async(
    max_retries: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 10.0,
    exponential_backoff: bool = True,
    jitter: bool = True,
    retry_on: Optional[Tuple[Type[Exception], ...]] = None,
):
    """
    Decorator for async functions that retries on transient failures.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_backoff: Whether to use exponential backoff
        jitter: Whether to add random jitter to delays
        retry_on: Tuple of exception types to retry on (defaults to transient DB errors)
    """
    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if not _should_retry(e, retry_on) or attempt >= max_retries:
                        raise
                    delay = _backoff_delay(attempt, base_delay, max_delay, exponential_backoff, jitter)
                    logger.warning(
                        f"Retry {attempt + 1}/{max_retries} for {func.__name__} "
                        f"after {delay:.2f}s due to: {type(e).__name__}: {str(e)[:100]}"
                    )
                    await asyncio.sleep(delay)

        return wrapper
    return decorator


def retry_sync(
    max_retries: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 10.0,
    exponential_backoff: bool = True,
    jitter: bool = True,
    retry_on: Optional[Tuple[Type[Exception], ...]] = None,
    sleep: Optional[Callable[[float], Any]] = None,
):
    """
    Decorator for sync functions that retries on transient failures.
    Same as retry_async but for blocking callables (HTTP clients).
    """
    def decorator(func: Callable):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    if not _should_retry(e, retry_on) or attempt >= max_retries:
                        raise
                    delay = _backoff_delay(attempt, base_delay, max_delay, exponential_backoff, jitter)
                    logger.warning(
                        f"Retry {attempt + 1}/{max_retries} for {func.__name__} "
                        f"after {delay:.2f}s due to: {type(e).__name__}: {str(e)[:100]}"
                    )
                    (sleep or time.sleep)(delay)

        return wrapper
    return decorator


def sanitize_string(value: Optional[Any], max_length: int = 1000, default: str = "") -> str:
    """Sanitize a string value for safe storage."""
    if value is None:
        return default
    # Remove null bytes and other problematic characters
    cleaned = str(value).replace("\x00", "").strip()
    if len(cleaned) > max_length:
        cleaned = cleaned[:max_length]
    return cleaned
