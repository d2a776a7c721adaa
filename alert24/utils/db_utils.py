"""Database utility functions."""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError, InterfaceError

logger = logging.getLogger(__name__)

T = TypeVar('T')

TRANSIENT_ERROR_MARKERS = (
    "connection refused",
    "connection reset",
    "connection closed",
    "server closed",
    "timeout",
    "too many clients",
    "database is locked",
    "deadlock detected",
)


def utcnow() -> datetime:
    """Current time as a naive UTC datetime, matching the stored columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def is_transient_error(exc: BaseException) -> bool:
    """Whether a database error is worth retrying on the next attempt or tick."""
    if isinstance(exc, asyncio.TimeoutError):
        return True
    if isinstance(exc, DBAPIError):
        error_str = str(exc).lower()
        return any(marker in error_str for marker in TRANSIENT_ERROR_MARKERS)
    return False


async def retry_on_lock(
    coro_func: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 0.1,
) -> T:
    """Retry a database operation on transient errors with exponential backoff.

    Handles PostgreSQL transient connection errors and SQLite lock contention
    that may occur when several scheduler runs overlap.

    Args:
        coro_func: Async function to call (should be a callable that returns a coroutine)
        max_retries: Maximum number of retry attempts
        base_delay: Base delay in seconds (doubles with each retry)

    Returns:
        The result of the coroutine function

    Raises:
        OperationalError: If all retries fail or error is not transient
    """
    last_exception = None
    for attempt in range(max_retries):
        try:
            return await coro_func()
        except (OperationalError, InterfaceError) as e:
            if not is_transient_error(e):
                raise
            last_exception = e
            delay = base_delay * (2 ** attempt)
            logger.warning(f"Database transient error, retrying in {delay}s (attempt {attempt + 1}/{max_retries})")
            await asyncio.sleep(delay)
    raise last_exception
