"""
Routing Decision Engine
Turns a call plus the tenant's configuration into exactly one routing outcome
"""

from typing import List, Optional

from call_router.core.config import settings
from call_router.core.logging import get_logger
from call_router.models.call import CallContext, CallDirection, RoutingDecision, RoutingType
from call_router.models.routing import ConfigSnapshot, GroupMember, RoutingRule, TargetType
from call_router.models.tenant import Tenant, Trunk, VoiceAgent
from call_router.services.config_service import ConfigurationService
from call_router.services.coordination_store import CoordinationKeys, CoordinationStore
from call_router.services.matching import OutboundRuleMatcher, PatternMatcher
from call_router.services.strategies import StrategyFactory

logger = get_logger(__name__)


class AgentLoadTracker:
    """
    Live concurrent-call count per voice agent.

    Each agent has a set of the session tokens it is currently serving, so
    a redelivered webhook can add or remove the same session twice without
    skewing the count. Booking checks capacity and adds the session in one
    atomic step, so concurrent calls cannot overbook an agent.
    """

    def __init__(self, store: CoordinationStore):
        self.store = store

    async def active_calls(self, tenant_id: int, agent_id: int) -> int:
        return await self.store.set_size(CoordinationKeys.agent_active_calls(tenant_id, agent_id))

    async def has_capacity(self, tenant_id: int, agent: VoiceAgent) -> bool:
        if agent.max_concurrent_calls is None:
            return True
        return await self.active_calls(tenant_id, agent.id) < agent.max_concurrent_calls

    async def is_available(self, tenant_id: int, agent: VoiceAgent) -> bool:
        return agent.is_routable and await self.has_capacity(tenant_id, agent)

    async def acquire(self, tenant_id: int, agent: VoiceAgent, session_token: str) -> bool:
        """Book the session on the agent; False when the agent is already at capacity"""
        return await self.store.set_add_bounded(
            CoordinationKeys.agent_active_calls(tenant_id, agent.id),
            session_token,
            agent.max_concurrent_calls,
            settings.session_ttl_seconds
        )

    async def release(self, tenant_id: int, agent_id: int, session_token: str) -> None:
        await self.store.set_remove(CoordinationKeys.agent_active_calls(tenant_id, agent_id), session_token)


class RoutingEngine:
    """
    Inbound calls go through the pattern matcher to an agent or a group
    strategy; outbound calls go through the outbound matcher to a trunk.

    Expected dead ends (no rule, no agent, no trunk) come back as hangup
    decisions with a reason. decide() also turns any unexpected exception
    into a hangup so the carrier always gets an answer.

    A successful agent decision already holds a booking on the agent for the
    call's session; the caller releases it if the decision is not used.
    """

    def __init__(
        self,
        config: ConfigurationService,
        strategies: StrategyFactory,
        load_tracker: AgentLoadTracker,
        matcher: Optional[PatternMatcher] = None,
        outbound_matcher: Optional[OutboundRuleMatcher] = None
    ):
        self.config = config
        self.strategies = strategies
        self.load_tracker = load_tracker
        self.matcher = matcher or PatternMatcher()
        self.outbound_matcher = outbound_matcher or OutboundRuleMatcher()

    def detect_direction(self, tenant: Tenant, from_number: str, reported: Optional[str] = None) -> CallDirection:
        """Trust the carrier's direction when given, otherwise look for a known outbound caller id"""
        if reported:
            reported = reported.strip().lower()
            if reported.startswith("outbound"):
                return CallDirection.OUTBOUND
            if reported.startswith("inbound"):
                return CallDirection.INBOUND

        if self.outbound_matcher.is_outbound_caller(self.config.snapshot, tenant.id, from_number):
            return CallDirection.OUTBOUND
        return CallDirection.INBOUND

    async def decide(self, tenant: Tenant, call: CallContext) -> RoutingDecision:
        try:
            if call.direction == CallDirection.OUTBOUND:
                decision = await self.route_outbound(tenant, call)
            else:
                decision = await self.route_inbound(tenant, call)
        except Exception as e:
            logger.error(f"Routing failed for session {call.session_token}: {e}", exc_info=True)
            return RoutingDecision.hangup(f"Routing decision failed: {e}")

        if decision.success:
            logger.info(
                f"Session {call.session_token} routed via {decision.routing_type.value}: {decision.summary()}"
            )
        else:
            logger.info(f"Session {call.session_token} will be hung up: {decision.reason}")
        return decision

    # Inbound

    async def route_inbound(self, tenant: Tenant, call: CallContext) -> RoutingDecision:
        snapshot = self.config.snapshot
        rule = self.matcher.match(snapshot, tenant.id, call)
        if rule is None:
            return RoutingDecision.hangup("No matching rule")

        if rule.target_type == TargetType.AGENT:
            return await self.route_to_agent(snapshot, tenant, call, rule)
        return await self.route_to_group(snapshot, tenant, call, rule)

    async def route_to_agent(
        self,
        snapshot: ConfigSnapshot,
        tenant: Tenant,
        call: CallContext,
        rule: RoutingRule
    ) -> RoutingDecision:
        agent = snapshot.get_agent(tenant.id, rule.target_id)
        if agent is None or not agent.is_routable:
            return RoutingDecision.hangup("Voice agent not available", rule_id=rule.id, agent_id=rule.target_id)

        if not await self.load_tracker.acquire(tenant.id, agent, call.session_token):
            return RoutingDecision.hangup("Voice agent at capacity", rule_id=rule.id, agent_id=agent.id)

        return RoutingDecision.to_agent(agent, caller_id=call.from_number, rule_id=rule.id)

    async def route_to_group(
        self,
        snapshot: ConfigSnapshot,
        tenant: Tenant,
        call: CallContext,
        rule: RoutingRule
    ) -> RoutingDecision:
        group = snapshot.group_snapshot(tenant.id, rule.target_id)
        if group is None or not group.group.enabled:
            return RoutingDecision.hangup("Agent group not available", rule_id=rule.id, group_id=rule.target_id)

        available = await self.available_members(tenant, group.members)
        if not available:
            return RoutingDecision.hangup("No agents available in group", rule_id=rule.id, group_id=group.group_id)

        strategy = self.strategies.for_group(group)
        member = await strategy.select_agent(
            group,
            available,
            reserve=lambda m: self.load_tracker.acquire(tenant.id, m.agent, call.session_token)
        )
        if member is None:
            return RoutingDecision.hangup(
                "Unable to select agent from group",
                rule_id=rule.id,
                group_id=group.group_id,
                strategy=group.group.strategy.value
            )

        return RoutingDecision.to_group(group.group, member.agent, caller_id=call.from_number, rule_id=rule.id)

    async def available_members(self, tenant: Tenant, members: List[GroupMember]) -> List[GroupMember]:
        available = []
        for member in members:
            if await self.load_tracker.is_available(tenant.id, member.agent):
                available.append(member)
        return available

    # Outbound

    async def route_outbound(self, tenant: Tenant, call: CallContext) -> RoutingDecision:
        snapshot = self.config.snapshot
        trunks = {trunk.id: trunk for trunk in snapshot.trunks_for(tenant.id)}

        rule = self.outbound_matcher.match(snapshot, tenant.id, call)
        if rule is not None:
            candidates = self.order_trunks(trunks[i] for i in rule.trunk_ids if i in trunks)
            if not candidates:
                return RoutingDecision.hangup("No available trunks for outbound rule", rule_id=rule.id)
            return RoutingDecision.to_trunk(
                RoutingType.OUTBOUND_RULE,
                candidates[0],
                destination=call.to_number,
                caller_id=call.from_number,
                rule_id=rule.id,
                ring_timeout=rule.trunk_config.ring_timeout,
                max_duration=rule.trunk_config.max_duration
            )

        enabled = self.order_trunks(trunks.values())
        default = next((trunk for trunk in enabled if trunk.is_default), None)
        if default is not None:
            return RoutingDecision.to_trunk(
                RoutingType.DEFAULT_TRUNK,
                default,
                destination=call.to_number,
                caller_id=call.from_number
            )

        if enabled:
            return RoutingDecision.to_trunk(
                RoutingType.FALLBACK_TRUNK,
                enabled[0],
                destination=call.to_number,
                caller_id=call.from_number
            )

        return RoutingDecision.hangup("No outbound route available")

    @staticmethod
    def order_trunks(trunks) -> List[Trunk]:
        """Enabled trunks, highest priority first"""
        return sorted(
            (trunk for trunk in trunks if trunk.enabled),
            key=lambda trunk: (-trunk.priority, trunk.id)
        )
