"""
Retry helper for read-only remote calls.
"""
import asyncio
import functools
import random
from typing import Any, Callable, Optional, Tuple, Type

from tierkeeper.exceptions import AuthenticationError, OperationalError
from tierkeeper.monitoring.logger import get_logger

logger = get_logger(__name__)


def retry_on_transient_errors(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_backoff: float = 10.0,
    transient_errors: Optional[Tuple[Type[Exception], ...]] = None,
):
    """
    Decorator to retry async functions on transient errors.

    Implements exponential backoff with jitter. Only use it on idempotent
    calls: order placement must never be retried blindly.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial wait time in seconds
        max_backoff: Maximum wait time in seconds
        transient_errors: Exception types to retry on. Defaults to OperationalError.
            AuthenticationError is never retried.
    """
    retry_on = transient_errors or (OperationalError,)

    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            retry_count = 0
            backoff = base_delay

            while True:
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if isinstance(e, AuthenticationError) or not isinstance(e, retry_on):
                        raise

                    if retry_count >= max_retries:
                        logger.warning(
                            "Retries exhausted",
                            func=func.__name__,
                            max_retries=max_retries,
                            error=str(e),
                        )
                        raise

                    logger.warning(
                        "Transient error, retrying",
                        func=func.__name__,
                        attempt=retry_count + 1,
                        max_retries=max_retries,
                        error=str(e),
                        wait=f"{backoff:.2f}s",
                    )
                    await asyncio.sleep(backoff)

                    retry_count += 1
                    backoff = min(backoff * 2, max_backoff)
                    backoff += random.uniform(0, 0.5)

        return wrapper
    return decorator
