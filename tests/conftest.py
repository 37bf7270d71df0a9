"""
Pytest configuration and fixtures
"""

import copy
import os
import pytest

# Set test environment variables before importing app modules
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("ROUTING_CONFIG_PATH", "tests/missing-routing-config.json")
os.environ.setdefault("LOCK_RETRY_DELAY", "0.01")

import fakeredis
from fastapi.testclient import TestClient

TENANT_DOMAIN = "acme.cloudonix.net"

SNAPSHOT = {
    "tenants": [
        {"id": 1, "name": "Acme", "domain": TENANT_DOMAIN},
        {"id": 2, "name": "Globex", "domain": "globex.cloudonix.net"},
        {"id": 3, "name": "Dormant", "domain": "dormant.cloudonix.net", "is_active": False},
    ],
    "voice_agents": [
        {"id": 1, "tenant_id": 1, "name": "Alpha", "provider": "vapi", "service_value": "agent-alpha"},
        {"id": 2, "tenant_id": 1, "name": "Bravo", "provider": "retell", "service_value": "agent-bravo"},
        {
            "id": 3, "tenant_id": 1, "name": "Charlie", "provider": "synthflow",
            "service_value": "agent-charlie", "username": "synth-user", "password": "synth-pass"
        },
        {"id": 4, "tenant_id": 1, "name": "Delta", "provider": "elevenlabs", "service_value": "agent-delta"},
        {"id": 5, "tenant_id": 1, "name": "Echo", "provider": "vapi", "service_value": "agent-echo", "enabled": False},
        {
            "id": 6, "tenant_id": 1, "name": "Foxtrot", "provider": "vapi",
            "service_value": "agent-foxtrot", "max_concurrent_calls": 1
        },
        {"id": 10, "tenant_id": 2, "name": "Globex Agent", "provider": "vapi", "service_value": "globex-agent"},
    ],
    "agent_groups": [
        {"id": 1, "tenant_id": 1, "name": "Support", "strategy": "round_robin"},
        {"id": 2, "tenant_id": 1, "name": "Sales", "strategy": "priority"},
        {"id": 3, "tenant_id": 1, "name": "Billing", "strategy": "load_balanced"},
        {"id": 4, "tenant_id": 1, "name": "Closed", "strategy": "round_robin", "enabled": False},
        {"id": 5, "tenant_id": 1, "name": "Nobody Home", "strategy": "round_robin"},
    ],
    "group_memberships": [
        {"group_id": 1, "agent_id": 1},
        {"group_id": 1, "agent_id": 2},
        {"group_id": 1, "agent_id": 3},
        {"group_id": 2, "agent_id": 1, "priority": 90},
        {"group_id": 2, "agent_id": 2, "priority": 90},
        {"group_id": 2, "agent_id": 3, "priority": 50},
        {"group_id": 3, "agent_id": 1},
        {"group_id": 3, "agent_id": 2},
        {"group_id": 3, "agent_id": 3},
        {"group_id": 4, "agent_id": 1},
        {"group_id": 5, "agent_id": 4},
        {"group_id": 5, "agent_id": 5},
    ],
    "routing_rules": [
        {"id": 1, "tenant_id": 1, "pattern": "+18005550001", "target_type": "group", "target_id": 1, "priority": 10},
        {"id": 2, "tenant_id": 1, "pattern": "+18005550002", "target_type": "group", "target_id": 2, "priority": 10},
        {"id": 3, "tenant_id": 1, "pattern": "+18005550003", "target_type": "group", "target_id": 3, "priority": 10},
        {"id": 4, "tenant_id": 1, "pattern": "+18005550004", "target_type": "agent", "target_id": 3, "priority": 10},
        {"id": 5, "tenant_id": 1, "pattern": "+18005550005", "target_type": "agent", "target_id": 4, "priority": 10},
        {"id": 6, "tenant_id": 1, "pattern": "+18005550006", "target_type": "agent", "target_id": 6, "priority": 10},
        {"id": 7, "tenant_id": 1, "pattern": "+18005550007", "target_type": "group", "target_id": 4, "priority": 10},
        {"id": 8, "tenant_id": 1, "pattern": "+18005550008", "target_type": "group", "target_id": 5, "priority": 10},
        {
            "id": 9, "tenant_id": 1, "pattern": "+18005550009", "target_type": "agent",
            "target_id": 2, "priority": 100, "enabled": False
        },
        {"id": 20, "tenant_id": 1, "pattern": "1800555", "target_type": "agent", "target_id": 1, "priority": 1},
        {"id": 30, "tenant_id": 2, "pattern": "1", "target_type": "agent", "target_id": 10, "priority": 1},
    ],
    "outbound_rules": [
        {
            "id": 1, "tenant_id": 1, "name": "UK", "caller_id": "+15550001111", "destination_pattern": "44",
            "trunk_ids": [1, 2], "trunk_config": {"ring_timeout": 30, "max_duration": 3600}, "priority": 10
        },
        {
            "id": 2, "tenant_id": 1, "name": "Broken", "caller_id": "+15550001111", "destination_pattern": "33",
            "trunk_ids": [99], "priority": 5
        },
    ],
    "trunks": [
        {"id": 1, "tenant_id": 1, "name": "Primary", "carrier_trunk_id": "trunk-primary", "priority": 10},
        {"id": 2, "tenant_id": 1, "name": "Secondary", "carrier_trunk_id": "trunk-secondary", "priority": 20},
        {
            "id": 3, "tenant_id": 1, "name": "Default", "carrier_trunk_id": "trunk-default",
            "priority": 1, "is_default": True
        },
        {"id": 20, "tenant_id": 2, "name": "Globex Out", "carrier_trunk_id": "globex-trunk", "priority": 5},
    ],
}


class FakeClock:
    """Controllable time source for window-based strategies"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def fake_server():
    return fakeredis.FakeServer()


@pytest.fixture
def fake_redis(fake_server):
    """Fixture for an isolated in-memory Redis"""
    return fakeredis.FakeAsyncRedis(server=fake_server, decode_responses=True)


@pytest.fixture
def redis_inspector(fake_server):
    """Synchronous view of the same in-memory Redis, usable outside the app event loop"""
    return fakeredis.FakeRedis(server=fake_server, decode_responses=True)


@pytest.fixture
def store(fake_redis):
    from call_router.services.coordination_store import CoordinationStore
    return CoordinationStore(fake_redis)


@pytest.fixture
def lock(store):
    from call_router.services.locking import DistributedLock
    return DistributedLock(store, retry_delay=0.01)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def snapshot_data():
    """Routing configuration as the administrative side would export it"""
    return copy.deepcopy(SNAPSHOT)


@pytest.fixture
def config_service(snapshot_data):
    from call_router.services.config_service import ConfigurationService
    return ConfigurationService.from_dict(snapshot_data)


@pytest.fixture
def snapshot(config_service):
    return config_service.snapshot


@pytest.fixture
def tenant(snapshot):
    return snapshot.tenant_by_domain(TENANT_DOMAIN)


@pytest.fixture
def strategy_factory(store, lock, clock):
    from call_router.services.strategies import StrategyFactory
    return StrategyFactory(store, lock, clock)


@pytest.fixture
def routing_service(store, config_service, clock):
    from call_router.services.call_routing_service import CallRoutingService
    from call_router.services.cxml_service import CxmlService
    return CallRoutingService(store=store, config=config_service, cxml=CxmlService(), clock=clock)


@pytest.fixture
def test_client(monkeypatch, fake_redis, routing_service, config_service):
    """Fixture for test client wired to the in-memory store and test snapshot"""
    import call_router.services.call_routing_service as call_routing_module
    import call_router.services.config_service as config_module
    import call_router.services.coordination_store as store_module
    import call_router.api.routes.webhooks as webhooks_module

    monkeypatch.setattr(store_module, "_redis_client", fake_redis)
    monkeypatch.setattr(store_module, "_coordination_store", routing_service.store)
    monkeypatch.setattr(config_module, "_configuration_service", config_service)
    monkeypatch.setattr(call_routing_module, "_call_routing_service", routing_service)
    monkeypatch.setattr(webhooks_module, "_webhook_ingress", None)

    from call_router.main import app
    with TestClient(app) as client:
        yield client


@pytest.fixture
def call_start_form():
    """Sample call-start webhook body"""
    return {
        "CallSid": "session-0001",
        "From": "+15551234567",
        "To": "+18005550001",
        "Direction": "inbound",
        "domain": TENANT_DOMAIN,
    }
