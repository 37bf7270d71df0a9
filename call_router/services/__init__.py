"""Services for the Call Router"""

from .coordination_store import CoordinationKeys, CoordinationStore, get_coordination_store, get_redis, close_redis
from .idempotency import IdempotencyGuard
from .locking import DistributedLock
from .matching import PatternMatcher, OutboundRuleMatcher, normalize_number, pattern_matches
from .state_machine import CallStateMachine
from .cxml_service import CxmlService, get_cxml_service
from .config_service import ConfigurationService, get_configuration_service
from .event_publisher import EventPublisher, EventType
from .routing_engine import AgentLoadTracker, RoutingEngine
from .webhook_ingress import WebhookIngress
from .call_routing_service import CallRoutingService, get_call_routing_service

__all__ = [
    "CoordinationKeys",
    "CoordinationStore",
    "get_coordination_store",
    "get_redis",
    "close_redis",
    "IdempotencyGuard",
    "DistributedLock",
    "PatternMatcher",
    "OutboundRuleMatcher",
    "normalize_number",
    "pattern_matches",
    "CallStateMachine",
    "CxmlService",
    "get_cxml_service",
    "ConfigurationService",
    "get_configuration_service",
    "EventPublisher",
    "EventType",
    "AgentLoadTracker",
    "RoutingEngine",
    "WebhookIngress",
    "CallRoutingService",
    "get_call_routing_service"
]
