"""Data models for the Call Router"""

from .tenant import (
    Tenant,
    VoiceAgent,
    VoiceAgentProvider,
    Trunk
)

from .routing import (
    DistributionStrategy,
    LoadBalancedSettings,
    PrioritySettings,
    RoundRobinSettings,
    AgentGroup,
    GroupMembership,
    GroupMember,
    GroupSnapshot,
    TargetType,
    RoutingRule,
    OutboundRule,
    OutboundTrunkConfig,
    ConfigSnapshot
)

from .call import (
    CallState,
    CallDirection,
    CdrDisposition,
    StateHistoryEntry,
    CallContext,
    RoutingType,
    RoutingDecision,
    CallStartPayload,
    SessionUpdatePayload,
    CdrSession,
    CdrPayload
)

__all__ = [
    # Tenant models
    "Tenant",
    "VoiceAgent",
    "VoiceAgentProvider",
    "Trunk",
    # Routing configuration
    "DistributionStrategy",
    "LoadBalancedSettings",
    "PrioritySettings",
    "RoundRobinSettings",
    "AgentGroup",
    "GroupMembership",
    "GroupMember",
    "GroupSnapshot",
    "TargetType",
    "RoutingRule",
    "OutboundRule",
    "OutboundTrunkConfig",
    "ConfigSnapshot",
    # Call models
    "CallState",
    "CallDirection",
    "CdrDisposition",
    "StateHistoryEntry",
    "CallContext",
    "RoutingType",
    "RoutingDecision",
    "CallStartPayload",
    "SessionUpdatePayload",
    "CdrSession",
    "CdrPayload"
]
