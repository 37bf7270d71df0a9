"""
Distributed Lock
Short-lived mutual exclusion over the coordination store
"""

import secrets
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Optional

from call_router.core.config import settings
from call_router.core.exceptions import CoordinationError, LockContentionError
from call_router.core.logging import get_logger
from call_router.services.coordination_store import CoordinationStore
from call_router.utils.retry import RetryError, retry_async_operation

logger = get_logger(__name__)


class LockNotAcquired(Exception):
    """Internal signal that the key is currently held by someone else"""


class DistributedLock:
    """
    SET NX EX lock with an owner token.

    Acquisition is retried a bounded number of times with increasing backoff
    and then fails with LockContentionError. Release is a compare-and-delete,
    so a holder whose lock already expired cannot free someone else's.
    """

    def __init__(
        self,
        store: CoordinationStore,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None
    ):
        self.store = store
        self.max_attempts = max_attempts or settings.lock_max_attempts
        self.retry_delay = settings.lock_retry_delay if retry_delay is None else retry_delay

    async def acquire(self, lock_key: str, ttl: int) -> str:
        """Acquire the lock and return the owner token"""
        token = secrets.token_hex(16)

        async def attempt():
            if not await self.store.set_if_absent(lock_key, token, ttl):
                raise LockNotAcquired(lock_key)
            return token

        try:
            return await retry_async_operation(
                attempt,
                max_retries=self.max_attempts,
                delay=self.retry_delay,
                exceptions=(LockNotAcquired,),
                operation_name=f"lock {lock_key}"
            )
        except RetryError as e:
            raise LockContentionError(lock_key, self.max_attempts) from e

    async def release(self, lock_key: str, token: str) -> bool:
        released = await self.store.delete_if_equals(lock_key, token)
        if not released:
            logger.warning(f"Lock {lock_key} expired before release")
        return released

    @asynccontextmanager
    async def hold(self, lock_key: str, ttl: int):
        token = await self.acquire(lock_key, ttl)
        try:
            yield token
        finally:
            try:
                await self.release(lock_key, token)
            except CoordinationError as e:
                # The TTL frees the key eventually
                logger.error(f"Failed to release lock {lock_key}: {e}")

    async def with_lock(self, lock_key: str, ttl: int, body: Callable[[], Awaitable[Any]]) -> Any:
        """Run body while holding lock_key"""
        async with self.hold(lock_key, ttl):
            return await body()
