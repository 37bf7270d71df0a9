"""
Round-robin distribution
"""

from typing import Any, Dict, List, Optional, Tuple

from call_router.core.config import settings
from call_router.core.logging import get_logger
from call_router.models.routing import DistributionStrategy, GroupMember, GroupSnapshot, RoundRobinSettings
from call_router.services.coordination_store import CoordinationKeys

from .base import AgentSelectionStrategy

logger = get_logger(__name__)

Slot = Tuple[GroupMember, int]


class RoundRobinStrategy(AgentSelectionStrategy):
    """
    Hands calls to enabled agents in agent-id order, one pointer per group.

    The pointer names the last slot served. With capacity weighting an agent
    of capacity N owns N slots, spread across the ring rather than bunched.
    """

    strategy = DistributionStrategy.ROUND_ROBIN

    @staticmethod
    def ring(group: GroupSnapshot, weighted: bool) -> List[Slot]:
        members = sorted(group.members, key=lambda m: m.agent_id)
        if not weighted:
            return [(m, 0) for m in members]

        slots = []
        for turn in range(max((m.weight for m in members), default=0)):
            slots.extend((m, turn) for m in members if m.weight > turn)
        return slots

    @staticmethod
    def slot_token(slot: Slot, weighted: bool) -> str:
        member, turn = slot
        return f"{member.agent_id}#{turn}" if weighted else str(member.agent_id)

    async def _select(
        self,
        group: GroupSnapshot,
        available: List[GroupMember],
        options: RoundRobinSettings
    ) -> Optional[GroupMember]:
        weighted = options.weighted_by_capacity
        ring = self.ring(group, weighted)
        if not ring:
            return None

        pointer_key = CoordinationKeys.round_robin_current(group.tenant_id, group.group_id)
        if options.reset_on_agent_change:
            await self._reset_if_members_changed(group, pointer_key)

        pointer = await self.store.get(pointer_key)
        tokens = [self.slot_token(slot, weighted) for slot in ring]
        start = tokens.index(pointer) + 1 if pointer in tokens else 0

        available_ids = {m.agent_id for m in available}
        for offset in range(len(ring)):
            index = (start + offset) % len(ring)
            member, _ = ring[index]
            if member.agent_id in available_ids:
                await self.store.set(pointer_key, tokens[index], ttl=settings.session_ttl_seconds)
                return member

        return None

    async def _reset_if_members_changed(self, group: GroupSnapshot, pointer_key: str) -> None:
        agents_key = CoordinationKeys.round_robin_agents(group.tenant_id, group.group_id)
        current = ",".join(str(m.agent_id) for m in sorted(group.members, key=lambda m: m.agent_id))
        stored = await self.store.get(agents_key)
        if stored == current:
            return

        if stored is not None:
            logger.info(f"Agent list of group {group.group_id} changed, resetting round-robin pointer")
            await self.store.delete(pointer_key)
        await self.store.set(agents_key, current, ttl=settings.session_ttl_seconds)

    async def get_stats(self, group: GroupSnapshot) -> Dict[str, Any]:
        stats = await super().get_stats(group)
        stats["pointer"] = await self.store.get(
            CoordinationKeys.round_robin_current(group.tenant_id, group.group_id)
        )
        return stats
