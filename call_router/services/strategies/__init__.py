"""Agent distribution strategies"""

from .base import AgentSelectionStrategy
from .load_balanced import LoadBalancedStrategy
from .priority import PriorityStrategy
from .round_robin import RoundRobinStrategy
from .factory import StrategyFactory, STRATEGY_CLASSES

__all__ = [
    "AgentSelectionStrategy",
    "LoadBalancedStrategy",
    "PriorityStrategy",
    "RoundRobinStrategy",
    "StrategyFactory",
    "STRATEGY_CLASSES"
]
