"""
Routing Configuration Models
Agent groups, memberships and routing rules, plus the snapshot that bundles them
"""

import json
import re
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator, model_validator

from .tenant import Tenant, VoiceAgent, Trunk, utc_now, ensure_aware

PATTERN_MAX_LENGTH = 20
PATTERN_ALLOWED = re.compile(r"^[+\d\s\-()\[\]{}*?Xx]+$")


def check_pattern(pattern: str) -> str:
    """Validate a number pattern, returning it stripped"""
    pattern = pattern.strip()
    if not pattern:
        raise ValueError("Pattern must not be empty")
    if len(pattern) > PATTERN_MAX_LENGTH:
        raise ValueError(f"Pattern must be at most {PATTERN_MAX_LENGTH} characters")
    if not PATTERN_ALLOWED.match(pattern):
        raise ValueError(f"Pattern contains invalid characters: {pattern}")
    return pattern


class DistributionStrategy(str, Enum):
    """Algorithm an agent group uses to pick one agent"""
    LOAD_BALANCED = "load_balanced"
    PRIORITY = "priority"
    ROUND_ROBIN = "round_robin"


class LoadBalancedSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    window_hours: int = Field(default=24, ge=1, le=168)
    max_calls_per_agent: Optional[int] = Field(default=None, ge=1)


class PrioritySettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    failover_enabled: bool = True
    round_robin_same_priority: bool = True


class RoundRobinSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    reset_on_agent_change: bool = True
    weighted_by_capacity: bool = False


STRATEGY_SETTINGS = {
    DistributionStrategy.LOAD_BALANCED: LoadBalancedSettings,
    DistributionStrategy.PRIORITY: PrioritySettings,
    DistributionStrategy.ROUND_ROBIN: RoundRobinSettings,
}


class AgentGroup(BaseModel):
    """A named pool of voice agents sharing one distribution strategy"""
    id: int
    tenant_id: int
    name: str
    strategy: DistributionStrategy = Field(default=DistributionStrategy.LOAD_BALANCED)
    settings: Dict[str, Any] = Field(default_factory=dict)
    enabled: bool = Field(default=True)

    @model_validator(mode="after")
    def apply_strategy_defaults(self) -> "AgentGroup":
        settings_class = STRATEGY_SETTINGS[self.strategy]
        self.settings = settings_class.model_validate(self.settings).model_dump()
        return self

    def strategy_settings(self):
        """Typed settings for the group's strategy"""
        return STRATEGY_SETTINGS[self.strategy].model_validate(self.settings)


class GroupMembership(BaseModel):
    """Agent-in-group association"""
    group_id: int
    agent_id: int
    priority: int = Field(default=50, ge=1, le=100)
    capacity: Optional[int] = Field(default=None, ge=1)
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("created_at")
    @classmethod
    def make_aware(cls, value: datetime) -> datetime:
        return ensure_aware(value)


class TargetType(str, Enum):
    AGENT = "agent"
    GROUP = "group"


class RoutingRule(BaseModel):
    """Ordered pattern-to-target mapping for inbound calls"""
    id: int
    tenant_id: int
    pattern: str
    target_type: TargetType
    target_id: int
    priority: int = Field(default=0)
    enabled: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("pattern")
    @classmethod
    def validate_pattern(cls, value: str) -> str:
        return check_pattern(value)

    @field_validator("created_at")
    @classmethod
    def make_aware(cls, value: datetime) -> datetime:
        return ensure_aware(value)


class OutboundTrunkConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    ring_timeout: Optional[int] = Field(default=None, ge=1)
    max_duration: Optional[int] = Field(default=None, ge=1)


class OutboundRule(BaseModel):
    """Maps a caller id and destination prefix to a set of trunks"""
    id: int
    tenant_id: int
    name: str = ""
    caller_id: str
    destination_pattern: str
    trunk_ids: List[int] = Field(default_factory=list)
    trunk_config: OutboundTrunkConfig = Field(default_factory=OutboundTrunkConfig)
    priority: int = Field(default=0)
    enabled: bool = Field(default=True)

    @field_validator("caller_id", "destination_pattern")
    @classmethod
    def validate_pattern(cls, value: str) -> str:
        return check_pattern(value)


class GroupMember(BaseModel):
    """A membership resolved against its voice agent"""
    agent: VoiceAgent
    membership: GroupMembership

    @property
    def agent_id(self) -> int:
        return self.agent.id

    @property
    def priority(self) -> int:
        return self.membership.priority

    @property
    def weight(self) -> int:
        return self.membership.capacity or 1

    @property
    def joined_at(self) -> datetime:
        return self.membership.created_at


class GroupSnapshot(BaseModel):
    """A group together with its enabled members, ordered by agent id"""
    group: AgentGroup
    members: List[GroupMember] = Field(default_factory=list)

    @property
    def tenant_id(self) -> int:
        return self.group.tenant_id

    @property
    def group_id(self) -> int:
        return self.group.id

    def fingerprint(self) -> str:
        """Stable digest of everything strategy state depends on"""
        return json.dumps({
            "strategy": self.group.strategy.value,
            "settings": self.group.settings,
            "members": [
                [m.agent_id, m.priority, m.membership.capacity]
                for m in self.members
            ],
        }, sort_keys=True)


class ConfigSnapshot(BaseModel):
    """Read-only routing configuration supplied by the administrative side"""
    tenants: List[Tenant] = Field(default_factory=list)
    voice_agents: List[VoiceAgent] = Field(default_factory=list)
    agent_groups: List[AgentGroup] = Field(default_factory=list)
    group_memberships: List[GroupMembership] = Field(default_factory=list)
    routing_rules: List[RoutingRule] = Field(default_factory=list)
    outbound_rules: List[OutboundRule] = Field(default_factory=list)
    trunks: List[Trunk] = Field(default_factory=list)

    _tenants_by_domain: Dict[str, Tenant] = PrivateAttr(default_factory=dict)
    _agents: Dict[Tuple[int, int], VoiceAgent] = PrivateAttr(default_factory=dict)
    _groups: Dict[Tuple[int, int], AgentGroup] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        self._tenants_by_domain = {t.domain: t for t in self.tenants}
        self._agents = {(a.tenant_id, a.id): a for a in self.voice_agents}
        self._groups = {(g.tenant_id, g.id): g for g in self.agent_groups}

    def tenant_by_domain(self, domain: str) -> Optional[Tenant]:
        return self._tenants_by_domain.get(domain.strip().lower())

    def get_agent(self, tenant_id: int, agent_id: int) -> Optional[VoiceAgent]:
        return self._agents.get((tenant_id, agent_id))

    def get_group(self, tenant_id: int, group_id: int) -> Optional[AgentGroup]:
        return self._groups.get((tenant_id, group_id))

    def group_snapshot(self, tenant_id: int, group_id: int) -> Optional[GroupSnapshot]:
        """Resolve a group and its enabled members; agents from other tenants are ignored"""
        group = self.get_group(tenant_id, group_id)
        if group is None:
            return None

        members = []
        for membership in self.group_memberships:
            if membership.group_id != group_id:
                continue
            agent = self.get_agent(tenant_id, membership.agent_id)
            if agent is None or not agent.enabled:
                continue
            members.append(GroupMember(agent=agent, membership=membership))

        members.sort(key=lambda m: m.agent_id)
        return GroupSnapshot(group=group, members=members)

    def group_snapshots(self) -> List[GroupSnapshot]:
        return [
            self.group_snapshot(group.tenant_id, group.id)
            for group in self.agent_groups
        ]

    def routing_rules_for(self, tenant_id: int) -> List[RoutingRule]:
        return [r for r in self.routing_rules if r.tenant_id == tenant_id]

    def outbound_rules_for(self, tenant_id: int) -> List[OutboundRule]:
        return [r for r in self.outbound_rules if r.tenant_id == tenant_id]

    def trunks_for(self, tenant_id: int) -> List[Trunk]:
        return [t for t in self.trunks if t.tenant_id == tenant_id]
