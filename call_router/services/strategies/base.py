"""
Distribution strategy contract
"""

import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional

from call_router.core.config import settings
from call_router.core.logging import get_logger
from call_router.models.routing import DistributionStrategy, GroupMember, GroupSnapshot
from call_router.services.coordination_store import CoordinationKeys, CoordinationStore
from call_router.services.locking import DistributedLock

logger = get_logger(__name__)


class AgentSelectionStrategy(ABC):
    """
    Picks one agent from a group.

    Selection runs under the group's strategy lock so pointer reads and
    advances never interleave across workers. select_agent never raises:
    any failure, including lock contention, degrades to None.

    An optional reserve callback books the picked agent while the lock is
    still held. A pick that cannot be booked is dropped from the candidates
    and selection runs again.
    """

    strategy: DistributionStrategy

    def __init__(
        self,
        store: CoordinationStore,
        lock: DistributedLock,
        clock: Optional[Callable[[], float]] = None
    ):
        self.store = store
        self.lock = lock
        self.clock = clock or time.time

    async def select_agent(
        self,
        group: GroupSnapshot,
        available: List[GroupMember],
        reserve: Optional[Callable[[GroupMember], Awaitable[bool]]] = None
    ) -> Optional[GroupMember]:
        if not available:
            return None

        lock_key = CoordinationKeys.group_strategy_lock(group.tenant_id, group.group_id)
        try:
            options = group.group.strategy_settings()
            member = await self.lock.with_lock(
                lock_key,
                settings.group_lock_ttl_seconds,
                lambda: self._select_and_reserve(group, available, options, reserve)
            )
        except Exception as e:
            logger.error(
                f"{self.strategy.value} selection failed for group {group.group_id}: {e}",
                exc_info=True
            )
            return None

        if member is not None:
            logger.info(
                f"Group {group.group_id} ({self.strategy.value}) selected agent {member.agent_id}"
            )
        return member

    async def _select_and_reserve(
        self,
        group: GroupSnapshot,
        available: List[GroupMember],
        options: Any,
        reserve: Optional[Callable[[GroupMember], Awaitable[bool]]]
    ) -> Optional[GroupMember]:
        candidates = list(available)
        while candidates:
            member = await self._select(group, candidates, options)
            if member is None:
                return None
            if reserve is None or await reserve(member):
                await self._commit(group, member, options)
                return member

            logger.info(f"Agent {member.agent_id} in group {group.group_id} filled up, trying the next one")
            candidates = [m for m in candidates if m.agent_id != member.agent_id]
        return None

    @abstractmethod
    async def _select(self, group: GroupSnapshot, available: List[GroupMember], options: Any) -> Optional[GroupMember]:
        """Choose an agent; called with the group strategy lock held"""

    async def _commit(self, group: GroupSnapshot, member: GroupMember, options: Any) -> None:
        """Record a pick that was booked; called with the group strategy lock held"""

    def state_prefix(self, group: GroupSnapshot) -> str:
        return CoordinationKeys.group_prefix(group.tenant_id, group.group_id) + f"{self.strategy.value}:"

    async def reset_state(self, group: GroupSnapshot) -> int:
        """Forget every pointer, counter and window entry this strategy keeps for the group"""
        return await self.store.delete_prefix(self.state_prefix(group))

    @classmethod
    def validate_group(cls, group: GroupSnapshot) -> List[str]:
        """Human-readable configuration problems; empty when the group is usable"""
        return [] if group.members else ["Group has no enabled agents"]

    async def get_stats(self, group: GroupSnapshot) -> Dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "group_id": group.group_id,
            "members": [m.agent_id for m in group.members],
        }
