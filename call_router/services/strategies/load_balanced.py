"""
Load-balanced distribution
"""

import uuid
from typing import Any, Dict, List, Optional

from call_router.core.config import settings
from call_router.core.logging import get_logger
from call_router.models.routing import DistributionStrategy, GroupMember, GroupSnapshot, LoadBalancedSettings
from call_router.services.coordination_store import CoordinationKeys

from .base import AgentSelectionStrategy

logger = get_logger(__name__)


class LoadBalancedStrategy(AgentSelectionStrategy):
    """
    Sends the call to the agent with the fewest calls in a rolling window.

    Each agent has a timestamp log in the store; one entry per booked call.
    The count is always derived from the log, so there is no separate counter
    to drift. Ties go to the lowest agent id.
    """

    strategy = DistributionStrategy.LOAD_BALANCED

    async def _select(
        self,
        group: GroupSnapshot,
        available: List[GroupMember],
        options: LoadBalancedSettings
    ) -> Optional[GroupMember]:
        now = self.clock()
        window = options.window_hours * 3600
        counts = await self.window_counts(group, available, now - window)

        eligible = [
            m for m in available
            if options.max_calls_per_agent is None or counts[m.agent_id] < options.max_calls_per_agent
        ]
        if not eligible:
            logger.warning(f"All agents in group {group.group_id} reached {options.max_calls_per_agent} calls")
            return None

        return min(eligible, key=lambda m: (counts[m.agent_id], m.agent_id))

    async def _commit(self, group: GroupSnapshot, member: GroupMember, options: LoadBalancedSettings) -> None:
        now = self.clock()
        await self.store.record_timestamp(
            CoordinationKeys.load_balanced_agent(group.tenant_id, group.group_id, member.agent_id),
            f"{now:.6f}:{uuid.uuid4().hex}",
            now,
            options.window_hours * 3600 + settings.load_window_buffer_seconds
        )

    async def window_counts(self, group: GroupSnapshot, members: List[GroupMember], cutoff: float) -> Dict[int, int]:
        counts = {}
        for member in members:
            key = CoordinationKeys.load_balanced_agent(group.tenant_id, group.group_id, member.agent_id)
            await self.store.prune_before(key, cutoff)
            counts[member.agent_id] = await self.store.count_since(key, cutoff)
        return counts

    async def get_stats(self, group: GroupSnapshot) -> Dict[str, Any]:
        stats = await super().get_stats(group)
        options = group.group.strategy_settings()
        cutoff = self.clock() - options.window_hours * 3600
        stats["window_hours"] = options.window_hours
        stats["calls"] = await self.window_counts(group, group.members, cutoff)
        return stats
