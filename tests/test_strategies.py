"""
Tests for agent distribution strategies
"""

import asyncio
import pytest


def build_group(strategy, members, settings=None, group_id=1, tenant_id=1):
    """Resolve a one-group snapshot; members are membership dicts keyed by agent_id"""
    from call_router.models.routing import ConfigSnapshot

    snapshot = ConfigSnapshot.model_validate({
        "voice_agents": [
            {
                "id": m["agent_id"],
                "tenant_id": tenant_id,
                "name": f"Agent {m['agent_id']}",
                "provider": "vapi",
                "service_value": f"agent-{m['agent_id']}",
            }
            for m in members
        ],
        "agent_groups": [
            {"id": group_id, "tenant_id": tenant_id, "name": "Group", "strategy": strategy, "settings": settings or {}}
        ],
        "group_memberships": [{"group_id": group_id, **m} for m in members],
    })
    return snapshot.group_snapshot(tenant_id, group_id)


async def pick(strategy, group, available=None, times=1):
    picks = []
    for _ in range(times):
        member = await strategy.select_agent(group, group.members if available is None else available)
        picks.append(member.agent_id if member else None)
    return picks


class TestRoundRobinStrategy:
    """Tests for round-robin distribution"""

    @pytest.mark.asyncio
    async def test_rotates_in_agent_id_order(self, strategy_factory, snapshot):
        from call_router.models.routing import DistributionStrategy

        strategy = strategy_factory.get(DistributionStrategy.ROUND_ROBIN)
        group = snapshot.group_snapshot(1, 1)

        assert await pick(strategy, group, times=4) == [1, 2, 3, 1]

    @pytest.mark.asyncio
    async def test_skips_unavailable_agents(self, strategy_factory):
        from call_router.models.routing import DistributionStrategy

        strategy = strategy_factory.get(DistributionStrategy.ROUND_ROBIN)
        group = build_group("round_robin", [{"agent_id": 1}, {"agent_id": 2}, {"agent_id": 3}])
        available = [m for m in group.members if m.agent_id != 2]

        assert await pick(strategy, group, available, times=3) == [1, 3, 1]

    @pytest.mark.asyncio
    async def test_stale_pointer_restarts_at_first_agent(self, strategy_factory, store):
        from call_router.models.routing import DistributionStrategy
        from call_router.services.coordination_store import CoordinationKeys

        strategy = strategy_factory.get(DistributionStrategy.ROUND_ROBIN)
        group = build_group("round_robin", [{"agent_id": 1}, {"agent_id": 2}])
        await store.set(CoordinationKeys.round_robin_current(1, 1), "99")

        assert await pick(strategy, group) == [1]

    @pytest.mark.asyncio
    async def test_membership_change_resets_pointer(self, strategy_factory):
        from call_router.models.routing import DistributionStrategy

        strategy = strategy_factory.get(DistributionStrategy.ROUND_ROBIN)
        before = build_group("round_robin", [{"agent_id": 1}, {"agent_id": 2}, {"agent_id": 3}])
        after = build_group("round_robin", [{"agent_id": 1}, {"agent_id": 2}, {"agent_id": 3}, {"agent_id": 4}])

        assert await pick(strategy, before, times=2) == [1, 2]
        assert await pick(strategy, after) == [1]

    @pytest.mark.asyncio
    async def test_membership_change_keeps_pointer_when_reset_disabled(self, strategy_factory):
        from call_router.models.routing import DistributionStrategy

        strategy = strategy_factory.get(DistributionStrategy.ROUND_ROBIN)
        options = {"reset_on_agent_change": False}
        before = build_group("round_robin", [{"agent_id": 1}, {"agent_id": 2}, {"agent_id": 3}], options)
        after = build_group(
            "round_robin",
            [{"agent_id": 1}, {"agent_id": 2}, {"agent_id": 3}, {"agent_id": 4}],
            options
        )

        assert await pick(strategy, before, times=2) == [1, 2]
        assert await pick(strategy, after, times=2) == [3, 4]

    @pytest.mark.asyncio
    async def test_weighted_by_capacity(self, strategy_factory):
        from call_router.models.routing import DistributionStrategy

        strategy = strategy_factory.get(DistributionStrategy.ROUND_ROBIN)
        group = build_group(
            "round_robin",
            [{"agent_id": 1, "capacity": 2}, {"agent_id": 2, "capacity": 1}],
            {"weighted_by_capacity": True}
        )

        assert await pick(strategy, group, times=6) == [1, 2, 1, 1, 2, 1]

    @pytest.mark.asyncio
    async def test_groups_in_different_tenants_rotate_independently(self, strategy_factory):
        from call_router.models.routing import DistributionStrategy

        strategy = strategy_factory.get(DistributionStrategy.ROUND_ROBIN)
        first = build_group("round_robin", [{"agent_id": 1}, {"agent_id": 2}], tenant_id=1)
        second = build_group("round_robin", [{"agent_id": 1}, {"agent_id": 2}], tenant_id=2)

        assert await pick(strategy, first, times=2) == [1, 2]
        assert await pick(strategy, second) == [1]

    @pytest.mark.asyncio
    async def test_concurrent_selections_share_one_rotation(self, store, clock):
        from call_router.models.routing import DistributionStrategy
        from call_router.services.locking import DistributedLock
        from call_router.services.strategies import StrategyFactory

        patient_lock = DistributedLock(store, max_attempts=100, retry_delay=0.001)
        strategy = StrategyFactory(store, patient_lock, clock).get(DistributionStrategy.ROUND_ROBIN)
        group = build_group("round_robin", [{"agent_id": 1}, {"agent_id": 2}, {"agent_id": 3}])

        results = await asyncio.gather(*(strategy.select_agent(group, group.members) for _ in range(6)))
        picked = sorted(member.agent_id for member in results)

        assert picked == [1, 1, 2, 2, 3, 3]


class TestLoadBalancedStrategy:
    """Tests for load-balanced distribution"""

    @pytest.mark.asyncio
    async def test_spreads_calls_evenly(self, strategy_factory, snapshot):
        from call_router.models.routing import DistributionStrategy

        strategy = strategy_factory.get(DistributionStrategy.LOAD_BALANCED)
        group = snapshot.group_snapshot(1, 3)

        picks = await pick(strategy, group, times=30)
        counts = [picks.count(agent_id) for agent_id in (1, 2, 3)]

        assert max(counts) - min(counts) <= 1
        assert picks[:3] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_rolling_window_forgets_old_calls(self, strategy_factory, clock):
        from call_router.models.routing import DistributionStrategy

        strategy = strategy_factory.get(DistributionStrategy.LOAD_BALANCED)
        group = build_group("load_balanced", [{"agent_id": 1}, {"agent_id": 2}])
        only_first = [m for m in group.members if m.agent_id == 1]

        assert await pick(strategy, group, only_first, times=3) == [1, 1, 1]

        clock.advance(12 * 3600)
        assert await pick(strategy, group) == [2]

        # Agent 1's calls are now outside the 24 hour window, agent 2's is not
        clock.advance(13 * 3600)
        assert await pick(strategy, group) == [1]

    @pytest.mark.asyncio
    async def test_max_calls_per_agent(self, strategy_factory):
        from call_router.models.routing import DistributionStrategy

        strategy = strategy_factory.get(DistributionStrategy.LOAD_BALANCED)
        group = build_group("load_balanced", [{"agent_id": 1}, {"agent_id": 2}], {"max_calls_per_agent": 1})

        assert await pick(strategy, group, times=3) == [1, 2, None]

    @pytest.mark.asyncio
    async def test_window_key_expires(self, strategy_factory, store):
        from call_router.models.routing import DistributionStrategy
        from call_router.services.coordination_store import CoordinationKeys

        strategy = strategy_factory.get(DistributionStrategy.LOAD_BALANCED)
        group = build_group("load_balanced", [{"agent_id": 1}], {"window_hours": 1})
        await pick(strategy, group)

        ttl = await store.ttl(CoordinationKeys.load_balanced_agent(1, 1, 1))
        assert 3600 < ttl <= 7200

    @pytest.mark.asyncio
    async def test_stats_report_window_counts(self, strategy_factory):
        from call_router.models.routing import DistributionStrategy

        strategy = strategy_factory.get(DistributionStrategy.LOAD_BALANCED)
        group = build_group("load_balanced", [{"agent_id": 1}, {"agent_id": 2}])
        await pick(strategy, group, times=3)

        stats = await strategy.get_stats(group)
        assert stats["calls"] == {1: 2, 2: 1}
        assert stats["window_hours"] == 24


class TestPriorityStrategy:
    """Tests for priority distribution"""

    def test_levels_are_ordered_highest_first(self, snapshot):
        from call_router.services.strategies import PriorityStrategy

        levels = PriorityStrategy.levels(snapshot.group_snapshot(1, 2))
        assert [[m.agent_id for m in level] for level in levels] == [[1, 2], [3]]

    @pytest.mark.asyncio
    async def test_rotates_within_top_level(self, strategy_factory, snapshot):
        from call_router.models.routing import DistributionStrategy

        strategy = strategy_factory.get(DistributionStrategy.PRIORITY)
        group = snapshot.group_snapshot(1, 2)

        assert await pick(strategy, group, times=4) == [1, 2, 1, 2]

    @pytest.mark.asyncio
    async def test_fails_over_to_lower_level(self, strategy_factory, snapshot):
        from call_router.models.routing import DistributionStrategy

        strategy = strategy_factory.get(DistributionStrategy.PRIORITY)
        group = snapshot.group_snapshot(1, 2)
        available = [m for m in group.members if m.agent_id == 3]

        assert await pick(strategy, group, available) == [3]

    @pytest.mark.asyncio
    async def test_no_failover_when_disabled(self, strategy_factory):
        from call_router.models.routing import DistributionStrategy

        strategy = strategy_factory.get(DistributionStrategy.PRIORITY)
        group = build_group(
            "priority",
            [{"agent_id": 1, "priority": 90}, {"agent_id": 2, "priority": 50}],
            {"failover_enabled": False}
        )
        available = [m for m in group.members if m.agent_id == 2]

        assert await pick(strategy, group, available) == [None]

    @pytest.mark.asyncio
    async def test_join_order_when_rotation_disabled(self, strategy_factory):
        from call_router.models.routing import DistributionStrategy

        strategy = strategy_factory.get(DistributionStrategy.PRIORITY)
        group = build_group(
            "priority",
            [
                {"agent_id": 1, "priority": 90, "created_at": "2024-01-02T00:00:00Z"},
                {"agent_id": 2, "priority": 90, "created_at": "2024-01-01T00:00:00Z"},
            ],
            {"round_robin_same_priority": False}
        )

        assert await pick(strategy, group, times=3) == [2, 2, 2]

    def test_validate_group_flags_shared_priority_without_rotation(self):
        from call_router.services.strategies import PriorityStrategy

        group = build_group(
            "priority",
            [{"agent_id": 1, "priority": 90}, {"agent_id": 2, "priority": 90}],
            {"round_robin_same_priority": False}
        )
        problems = PriorityStrategy.validate_group(group)

        assert len(problems) == 1
        assert "Priority 90" in problems[0]


class TestStrategyContract:
    """Tests shared by all strategies"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("strategy_name", ["round_robin", "load_balanced", "priority"])
    async def test_empty_candidates_return_none(self, strategy_factory, strategy_name):
        group = build_group(strategy_name, [{"agent_id": 1}])
        strategy = strategy_factory.for_group(group)

        assert await strategy.select_agent(group, []) is None

    @pytest.mark.asyncio
    async def test_lock_contention_degrades_to_none(self, strategy_factory, store):
        from call_router.services.coordination_store import CoordinationKeys

        group = build_group("round_robin", [{"agent_id": 1}])
        await store.set(CoordinationKeys.group_strategy_lock(1, 1), "other-worker", ttl=30)

        assert await strategy_factory.for_group(group).select_agent(group, group.members) is None

    def test_unknown_strategy(self, strategy_factory):
        with pytest.raises(ValueError):
            strategy_factory.get("random")

    def test_group_without_members_is_reported(self):
        from call_router.services.strategies import RoundRobinStrategy

        group = build_group("round_robin", [])
        assert RoundRobinStrategy.validate_group(group) == ["Group has no enabled agents"]

    @pytest.mark.asyncio
    async def test_reset_group_state(self, strategy_factory, store):
        from call_router.services.coordination_store import CoordinationKeys

        group = build_group("round_robin", [{"agent_id": 1}, {"agent_id": 2}])
        strategy = strategy_factory.for_group(group)
        assert await pick(strategy, group) == [1]

        assert await strategy_factory.reset_group_state(group) > 0
        assert await store.get(CoordinationKeys.round_robin_current(1, 1)) is None
        assert await pick(strategy, group) == [1]

    @pytest.mark.asyncio
    async def test_reset_waits_for_selection_in_flight(self, store, clock, monkeypatch):
        from call_router.models.routing import DistributionStrategy
        from call_router.services.coordination_store import CoordinationKeys
        from call_router.services.locking import DistributedLock
        from call_router.services.strategies import StrategyFactory

        factory = StrategyFactory(store, DistributedLock(store, max_attempts=20, retry_delay=0.01), clock)
        strategy = factory.get(DistributionStrategy.PRIORITY)
        group = build_group(
            "priority",
            [{"agent_id": 1, "priority": 50}, {"agent_id": 2, "priority": 50}],
            {"round_robin_same_priority": True}
        )
        rotation_key = CoordinationKeys.priority_rotation(1, 1, 50)

        entered = asyncio.Event()
        proceed = asyncio.Event()
        order_level = strategy._order_level

        async def paused_order_level(*args):
            entered.set()
            await proceed.wait()
            return await order_level(*args)

        monkeypatch.setattr(strategy, "_order_level", paused_order_level)

        selection = asyncio.create_task(strategy.select_agent(group, group.members))
        await entered.wait()
        reset = asyncio.create_task(factory.reset_group_state(group))
        await asyncio.sleep(0.05)
        assert not reset.done()

        proceed.set()
        assert (await selection).agent_id == 1
        await reset

        # The rotation written by the selection is gone once the reset finishes
        assert await store.get(rotation_key) is None


class TestSelectionBooking:
    """Tests for booking the picked agent inside the group lock"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("strategy_name", ["round_robin", "load_balanced", "priority"])
    async def test_full_agent_is_skipped(self, strategy_factory, strategy_name):
        group = build_group(strategy_name, [{"agent_id": 1}, {"agent_id": 2}, {"agent_id": 3}])
        strategy = strategy_factory.for_group(group)

        async def reserve(member):
            return member.agent_id != 1

        member = await strategy.select_agent(group, group.members, reserve=reserve)
        assert member.agent_id == 2

    @pytest.mark.asyncio
    async def test_nobody_bookable_returns_none(self, strategy_factory):
        group = build_group("round_robin", [{"agent_id": 1}, {"agent_id": 2}])
        strategy = strategy_factory.for_group(group)

        async def reserve(member):
            return False

        assert await strategy.select_agent(group, group.members, reserve=reserve) is None

    @pytest.mark.asyncio
    async def test_load_window_counts_only_booked_calls(self, strategy_factory):
        group = build_group("load_balanced", [{"agent_id": 1}, {"agent_id": 2}])
        strategy = strategy_factory.for_group(group)

        async def reserve(member):
            return member.agent_id != 1

        await strategy.select_agent(group, group.members, reserve=reserve)

        stats = await strategy.get_stats(group)
        assert stats["calls"] == {1: 0, 2: 1}
