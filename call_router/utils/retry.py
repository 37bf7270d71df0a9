"""
Retry Utilities
Bounded retries with exponential backoff for coordination-store operations
"""

import asyncio
from typing import Optional, Callable, Any, Type, Tuple

from call_router.core.logging import get_logger
from call_router.core.config import settings

logger = get_logger(__name__)


class RetryError(Exception):
    """Raised when all retry attempts fail"""
    def __init__(self, message: str, last_exception: Optional[Exception] = None):
        super().__init__(message)
        self.last_exception = last_exception


async def retry_async_operation(
    operation: Callable,
    max_retries: Optional[int] = None,
    delay: Optional[float] = None,
    backoff_multiplier: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    operation_name: str = "operation"
) -> Any:
    """
    Execute an async operation with retry logic

    Args:
        operation: Async callable to execute
        max_retries: Maximum attempts (defaults to lock_max_attempts)
        delay: Initial delay between retries
        backoff_multiplier: Multiplier for exponential backoff
        exceptions: Exception types to catch
        operation_name: Name for logging purposes

    Returns:
        Result of the operation

    Raises:
        RetryError: If all attempts fail
    """
    max_retries = max_retries or settings.lock_max_attempts
    delay = settings.lock_retry_delay if delay is None else delay
    last_exception = None
    current_delay = delay

    for attempt in range(1, max_retries + 1):
        try:
            return await operation()
        except exceptions as e:
            last_exception = e
            logger.debug(
                f"Attempt {attempt}/{max_retries} failed for {operation_name}: {e}"
            )

            if attempt < max_retries:
                await asyncio.sleep(current_delay)
                current_delay *= backoff_multiplier
            else:
                logger.warning(f"All {max_retries} attempts failed for {operation_name}")

    raise RetryError(
        f"Failed {operation_name} after {max_retries} attempts",
        last_exception=last_exception
    )
