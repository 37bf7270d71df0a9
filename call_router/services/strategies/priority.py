"""
Priority distribution
"""

from collections import defaultdict
from typing import Any, Dict, List, Optional

from call_router.core.config import settings
from call_router.core.logging import get_logger
from call_router.models.routing import DistributionStrategy, GroupMember, GroupSnapshot, PrioritySettings
from call_router.services.coordination_store import CoordinationKeys

from .base import AgentSelectionStrategy

logger = get_logger(__name__)


class PriorityStrategy(AgentSelectionStrategy):
    """
    Walks priority levels from highest to lowest.

    A level is every enabled member sharing a priority value. Within a level
    the order either rotates (atomic counter per level) or follows join time.
    With failover off only the top level is ever tried.
    """

    strategy = DistributionStrategy.PRIORITY

    @staticmethod
    def levels(group: GroupSnapshot) -> List[List[GroupMember]]:
        by_priority = defaultdict(list)
        for member in group.members:
            by_priority[member.priority].append(member)
        return [by_priority[p] for p in sorted(by_priority, reverse=True)]

    async def _select(
        self,
        group: GroupSnapshot,
        available: List[GroupMember],
        options: PrioritySettings
    ) -> Optional[GroupMember]:
        available_ids = {m.agent_id for m in available}

        for level in self.levels(group):
            ordered = await self._order_level(group, level, options)
            for member in ordered:
                if member.agent_id in available_ids:
                    return member

            if not options.failover_enabled:
                logger.info(
                    f"No available agent at priority {level[0].priority} in group {group.group_id}, failover disabled"
                )
                return None

        return None

    async def _order_level(
        self,
        group: GroupSnapshot,
        level: List[GroupMember],
        options: PrioritySettings
    ) -> List[GroupMember]:
        if len(level) > 1 and options.round_robin_same_priority:
            ordered = sorted(level, key=lambda m: m.agent_id)
            key = CoordinationKeys.priority_rotation(group.tenant_id, group.group_id, level[0].priority)
            counter = await self.store.increment(key, ttl=settings.session_ttl_seconds)
            start = (counter - 1) % len(ordered)
            return ordered[start:] + ordered[:start]

        return sorted(level, key=lambda m: (m.joined_at, m.agent_id))

    @classmethod
    def validate_group(cls, group: GroupSnapshot) -> List[str]:
        problems = super().validate_group(group)
        options = group.group.strategy_settings()
        if not options.round_robin_same_priority:
            for level in cls.levels(group):
                if len(level) > 1:
                    problems.append(
                        f"Priority {level[0].priority} is shared by agents "
                        f"{[m.agent_id for m in level]} but same-priority rotation is disabled"
                    )
        return problems

    async def get_stats(self, group: GroupSnapshot) -> Dict[str, Any]:
        stats = await super().get_stats(group)
        stats["levels"] = {
            level[0].priority: [m.agent_id for m in level]
            for level in self.levels(group)
        }
        return stats
