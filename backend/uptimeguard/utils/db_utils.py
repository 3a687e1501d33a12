"""Database utility functions."""
import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError

from ..errors import PersistenceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_MARKERS = (
    "connection refused",
    "connection reset",
    "connection closed",
    "server closed",
    "timeout",
    "too many clients",
    "database is locked",
)


def is_transient(error: Exception) -> bool:
    """Whether a driver error is worth another attempt."""
    if not isinstance(error, (OperationalError, InterfaceError)):
        return False
    text = str(error).lower()
    return any(marker in text for marker in TRANSIENT_MARKERS)


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    what: str,
    max_retries: int = 3,
    base_delay: float = 0.1,
) -> T:
    """Run a database operation, retrying transient errors with exponential backoff.

    Args:
        operation: Zero-argument callable returning a coroutine
        what: Short description used in logs and in the raised error
        max_retries: Maximum number of attempts
        base_delay: Base delay in seconds (doubles with each retry)

    Raises:
        PersistenceError: When the error is not transient or all attempts fail
    """
    for attempt in range(max_retries):
        try:
            return await operation()
        except SQLAlchemyError as e:
            if not is_transient(e) or attempt == max_retries - 1:
                raise PersistenceError(f"{what} failed: {e}") from e
            delay = base_delay * (2 ** attempt)
            logger.warning(f"Transient database error during {what}, retrying in {delay}s (attempt {attempt + 1}/{max_retries})")
            await asyncio.sleep(delay)
    raise PersistenceError(f"{what} failed")
