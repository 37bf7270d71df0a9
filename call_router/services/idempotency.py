"""
Idempotency Guard
Deduplicates at-least-once webhook deliveries
"""

from typing import Any, Awaitable, Callable, Optional, Tuple

from call_router.core.config import settings
from call_router.core.logging import get_logger
from call_router.services.coordination_store import CoordinationKeys, CoordinationStore

logger = get_logger(__name__)

PROCESSING = "processing"
COMPLETED = "completed"


class IdempotencyGuard:
    """
    Claims a (tenant, event type, session, event id) composite exactly once.

    Claiming is a single SET NX EX; a repeat delivery inside the TTL finds the
    marker and is reported as a duplicate. Store failures propagate as
    CoordinationError so the caller never processes a possible duplicate blind.
    """

    def __init__(self, store: CoordinationStore, ttl: Optional[int] = None):
        self.store = store
        self.ttl = ttl or settings.idempotency_ttl_seconds

    async def try_claim(self, tenant_id: int, event_type: str, session_token: str, event_id: str) -> bool:
        key = CoordinationKeys.idempotency(tenant_id, event_type, session_token, event_id)
        claimed = await self.store.set_if_absent(key, PROCESSING, self.ttl)
        if not claimed:
            logger.info(f"Duplicate {event_type} webhook for session {session_token} (event {event_id})")
        return claimed

    async def finalize(self, tenant_id: int, event_type: str, session_token: str, event_id: str) -> bool:
        """Upgrade a claimed marker to completed, refreshing its TTL"""
        key = CoordinationKeys.idempotency(tenant_id, event_type, session_token, event_id)
        return await self.store.set_if_present(key, COMPLETED, self.ttl)

    async def release(self, tenant_id: int, event_type: str, session_token: str, event_id: str) -> bool:
        """Drop an in-flight marker so a legitimate retry can proceed"""
        key = CoordinationKeys.idempotency(tenant_id, event_type, session_token, event_id)
        return await self.store.delete_if_equals(key, PROCESSING)

    async def status(self, tenant_id: int, event_type: str, session_token: str, event_id: str) -> Optional[str]:
        key = CoordinationKeys.idempotency(tenant_id, event_type, session_token, event_id)
        return await self.store.get(key)

    async def run_once(
        self,
        tenant_id: int,
        event_type: str,
        session_token: str,
        event_id: str,
        operation: Callable[[], Awaitable[Any]]
    ) -> Tuple[bool, Any]:
        """
        Run operation unless this event was already claimed

        Returns:
            (duplicate, result) where result is None for duplicates
        """
        if not await self.try_claim(tenant_id, event_type, session_token, event_id):
            return True, None

        try:
            result = await operation()
        except Exception:
            await self.release(tenant_id, event_type, session_token, event_id)
            raise

        await self.finalize(tenant_id, event_type, session_token, event_id)
        return False, result
