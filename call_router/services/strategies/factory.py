"""
Strategy factory
"""

from typing import Callable, Dict, Optional

from call_router.core.config import settings
from call_router.core.logging import get_logger
from call_router.models.routing import DistributionStrategy, GroupSnapshot
from call_router.services.coordination_store import CoordinationKeys, CoordinationStore
from call_router.services.locking import DistributedLock

from .base import AgentSelectionStrategy
from .load_balanced import LoadBalancedStrategy
from .priority import PriorityStrategy
from .round_robin import RoundRobinStrategy

logger = get_logger(__name__)

STRATEGY_CLASSES = {
    DistributionStrategy.LOAD_BALANCED: LoadBalancedStrategy,
    DistributionStrategy.PRIORITY: PriorityStrategy,
    DistributionStrategy.ROUND_ROBIN: RoundRobinStrategy,
}


class StrategyFactory:
    """Builds one strategy object per tag and owns group state invalidation"""

    def __init__(
        self,
        store: CoordinationStore,
        lock: DistributedLock,
        clock: Optional[Callable[[], float]] = None
    ):
        self.store = store
        self.lock = lock
        self._strategies: Dict[DistributionStrategy, AgentSelectionStrategy] = {
            tag: strategy_class(store, lock, clock)
            for tag, strategy_class in STRATEGY_CLASSES.items()
        }

    def get(self, strategy: DistributionStrategy) -> AgentSelectionStrategy:
        try:
            return self._strategies[DistributionStrategy(strategy)]
        except (KeyError, ValueError):
            raise ValueError(f"Unknown distribution strategy: {strategy}")

    def for_group(self, group: GroupSnapshot) -> AgentSelectionStrategy:
        return self.get(group.group.strategy)

    async def reset_group_state(self, group: GroupSnapshot) -> int:
        """
        Drop all strategy state for a group after its membership or settings change

        State of every strategy is cleared, so switching strategies never
        resurrects an old pointer. The update lock is taken first, then the
        strategy lock, so a reset waits for any selection in flight.
        """
        update_key = CoordinationKeys.group_update_lock(group.tenant_id, group.group_id)
        strategy_key = CoordinationKeys.group_strategy_lock(group.tenant_id, group.group_id)

        deleted = 0
        async with self.lock.hold(update_key, settings.group_lock_ttl_seconds):
            async with self.lock.hold(strategy_key, settings.group_lock_ttl_seconds):
                for strategy in self._strategies.values():
                    deleted += await strategy.reset_state(group)
        logger.info(f"Reset strategy state for group {group.group_id} ({deleted} keys)")
        return deleted
