"""
Retry decorator with exponential backoff for database operations

Handles transient database errors like connection drops, deadlocks and
serialization failures on the read paths of the monitor cycle.
"""
import asyncio
import functools
import logging
from typing import Callable, TypeVar, Any
from sqlalchemy.exc import (
    OperationalError,
    DBAPIError,
    DatabaseError,
    IntegrityError
)

from lifecycle_engine.utils.exceptions import DatabaseOperationError

logger = logging.getLogger(__name__)

T = TypeVar('T')


def async_retry(
    max_attempts: int = 3,
    initial_delay: float = 0.5,
    max_delay: float = 10.0,
    exponential_base: float = 2.0,
    exceptions: tuple = (OperationalError, DBAPIError, DatabaseError)
):
    """
    Retry decorator for async functions with exponential backoff

    Args:
        max_attempts: Maximum number of attempts (default: 3)
        initial_delay: Delay in seconds before the first retry (default: 0.5)
        max_delay: Cap on the delay between retries (default: 10.0)
        exponential_base: Base for the backoff calculation (default: 2.0)
        exceptions: Exception types that trigger a retry (default: DB errors)

    Example:
        @async_retry(max_attempts=5, initial_delay=1.0)
        async def load_rows(db: AsyncSession):
            result = await db.execute(query)
            return result.scalars().all()

    Only idempotent reads should be decorated: a retried write could be
    applied twice.
    """
    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            last_exception = None

            for attempt in range(1, max_attempts + 1):
                try:
                    result = await func(*args, **kwargs)

                    if attempt > 1:
                        logger.info(
                            f"✅ {func.__name__} succeeded on attempt {attempt}/{max_attempts}"
                        )

                    return result

                except exceptions as e:
                    last_exception = e

                    # Constraint violations are never transient
                    if isinstance(e, IntegrityError):
                        logger.error(f"IntegrityError in {func.__name__} - not retrying: {e}")
                        raise

                    if attempt < max_attempts:
                        delay = min(
                            initial_delay * (exponential_base ** (attempt - 1)),
                            max_delay
                        )

                        logger.warning(
                            f"⚠️ {func.__name__} failed on attempt {attempt}/{max_attempts}: {e}. "
                            f"Retrying in {delay:.2f}s..."
                        )

                        await asyncio.sleep(delay)
                    else:
                        logger.error(
                            f"❌ {func.__name__} failed after {max_attempts} attempts: {e}"
                        )

            raise DatabaseOperationError(
                func.__name__,
                f"Failed after {max_attempts} attempts. Last error: {last_exception}"
            )

        return wrapper
    return decorator


# Default retry for database reads
db_retry = async_retry(max_attempts=3, initial_delay=0.5)
