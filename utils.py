"""
Utility functions for the co-purchase service.
Includes retry logic for idempotent reads and batching helpers.
"""
import asyncio
import functools
import logging
import random
from typing import Callable, Iterable, Iterator, List, Optional, Sequence, Tuple, Type, TypeVar

from sqlalchemy.exc import (
    DisconnectionError,
    InterfaceError,
    OperationalError,
    TimeoutError as SQLAlchemyTimeoutError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Transient database errors that may be retried
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
        "database is locked",  # SQLite busy
        "40001",  # Serialization failure (PostgreSQL)
        "40p01",  # Deadlock detected (PostgreSQL)
    ]
    return any(pattern in error_msg for pattern in transient_patterns)


def backoff_delay(attempt: int, base_delay: float, max_delay: float, jitter: bool = True) -> float:
    """Exponential delay for the given 0-based attempt, capped, with 50-150% jitter."""
    delay = min(base_delay * (2 ** attempt), max_delay)
    if jitter:
        delay *= 0.5 + random.random()
    return delay


def retry_async(
    max_retries: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 10.0,
    retry_on: Optional[Tuple[Type[Exception], ...]] = None,
):
    """
    Retry an async callable on transient database failures.

    Only wrap idempotent reads with this: writes to the pair table are never
    retried within a pass. ``retry_on`` narrows retries to the given exception
    types instead of ``is_transient_error``.
    """
    def should_retry(exc: Exception) -> bool:
        return isinstance(exc, retry_on) if retry_on else is_transient_error(exc)

    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if attempt >= max_retries or not should_retry(e):
                        raise
                    delay = backoff_delay(attempt, base_delay, max_delay)
                    attempt += 1
                    logger.warning(
                        f"{func.__name__} failed ({type(e).__name__}: {str(e)[:100]}), "
                        f"retry {attempt}/{max_retries} in {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)

        return wrapper
    return decorator


def chunked(items: Iterable[T], size: int) -> Iterator[List[T]]:
    """Yield consecutive lists of at most ``size`` items, preserving order."""
    if size <= 0:
        raise ValueError("chunk size must be positive")
    if isinstance(items, Sequence):
        for start in range(0, len(items), size):
            yield list(items[start:start + size])
        return
    batch: List[T] = []
    for item in items:
        batch.append(item)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch
