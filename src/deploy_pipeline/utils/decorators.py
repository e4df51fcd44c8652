"""Decorator utilities for cross-cutting concerns."""
import time
import logging
import functools
import asyncio
from typing import Any, Callable, Optional, TypeVar, cast

# Setup logging
logger = logging.getLogger(__name__)

F = TypeVar('F', bound=Callable[..., Any])


def log_execution_time(func: F) -> F:
    """Decorator to log function execution time.

    Args:
        func: The function to decorate

    Returns:
        Decorated function that logs execution time
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start_time = time.monotonic()
        try:
            result = func(*args, **kwargs)
            duration = time.monotonic() - start_time
            logger.debug(f"{func.__qualname__} completed in {duration:.2f}s")
            return result
        except Exception as e:
            duration = time.monotonic() - start_time
            logger.error(f"{func.__qualname__} failed after {duration:.2f}s: {str(e)}")
            raise
    return cast(F, wrapper)


def async_log_execution_time(func: F) -> F:
    """Decorator to log async function execution time.

    Cancellation is logged and re-raised like any other failure.
    """
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        start_time = time.monotonic()
        try:
            result = await func(*args, **kwargs)
            duration = time.monotonic() - start_time
            logger.info(f"{func.__qualname__} completed in {duration:.2f}s")
            return result
        except asyncio.CancelledError:
            duration = time.monotonic() - start_time
            logger.warning(f"{func.__qualname__} cancelled after {duration:.2f}s")
            raise
        except Exception as e:
            duration = time.monotonic() - start_time
            logger.error(f"{func.__qualname__} failed after {duration:.2f}s: {str(e)}")
            raise
    return cast(F, wrapper)


def async_retry(max_attempts: int = 3, delay: float = 1.0, backoff: float = 2.0,
                max_delay: Optional[float] = 30.0,
                exceptions: tuple = (Exception,), logger_name: Optional[str] = None):
    """Decorator for retrying async functions with bounded exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (including the first)
        delay: Initial delay between retries in seconds
        backoff: Backoff multiplier (e.g., 2.0 means delay doubles each retry)
        max_delay: Upper bound for a single delay, None for unbounded
        exceptions: Tuple of exceptions to catch for retry
        logger_name: Optional logger name (defaults to module logger)

    Returns:
        Decorator function
    """
    retry_logger = logging.getLogger(logger_name) if logger_name else logger

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            attempt = 1
            current_delay = delay

            while True:
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_attempts:
                        retry_logger.error(f"All {max_attempts} attempts failed for {func.__qualname__}: {str(e)}")
                        raise

                    retry_logger.warning(
                        f"Attempt {attempt}/{max_attempts} for {func.__qualname__} failed: {str(e)}. "
                        f"Retrying in {current_delay:.2f}s"
                    )

                    await asyncio.sleep(current_delay)
                    attempt += 1
                    current_delay *= backoff
                    if max_delay is not None:
                        current_delay = min(current_delay, max_delay)

        return cast(F, wrapper)

    return decorator
