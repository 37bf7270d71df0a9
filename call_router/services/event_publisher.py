"""
Event Publisher

Fire-and-forget routing events for real-time and analytics consumers.
Each tenant has one pub/sub channel; publishing happens on background
tasks so the webhook response never waits on it.
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Set
from uuid import UUID, uuid4

from call_router.core.logging import get_logger
from call_router.models.call import CallState, RoutingDecision
from call_router.services.coordination_store import CoordinationKeys, CoordinationStore

logger = get_logger(__name__)


class EventType(str, Enum):
    CALL_STATE_CHANGED = "call.state_changed"
    ROUTING_DECISION_MADE = "routing.decision_made"


@dataclass
class Event:
    """Event envelope"""
    type: EventType
    tenant_id: int
    data: dict
    id: UUID = field(default_factory=uuid4)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "type": self.type.value,
            "tenant_id": self.tenant_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


class EventPublisher:
    """Publishes events on the tenant channel without blocking the caller"""

    def __init__(self, store: CoordinationStore):
        self.store = store
        self._pending: Set[asyncio.Task] = set()

    async def publish(self, event: Event) -> None:
        try:
            await self.store.publish(
                CoordinationKeys.events(event.tenant_id),
                json.dumps(event.to_dict(), default=str)
            )
        except Exception as e:
            logger.error(f"Failed to publish {event.type.value} for tenant {event.tenant_id}: {e}")

    def emit(self, tenant_id: int, event_type: EventType, data: Dict[str, Any]) -> Optional[asyncio.Task]:
        """Schedule publication on the running loop; returns the task"""
        event = Event(type=event_type, tenant_id=tenant_id, data=data)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop, dropping {event_type.value} event")
            return None

        task = loop.create_task(self.publish(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def call_state_changed(
        self,
        tenant_id: int,
        session_token: str,
        previous: CallState,
        current: CallState,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[asyncio.Task]:
        return self.emit(tenant_id, EventType.CALL_STATE_CHANGED, {
            "session_token": session_token,
            "from_state": previous.value,
            "to_state": current.value,
            "metadata": metadata or {},
        })

    def routing_decision_made(
        self,
        tenant_id: int,
        session_token: str,
        decision: RoutingDecision
    ) -> Optional[asyncio.Task]:
        return self.emit(tenant_id, EventType.ROUTING_DECISION_MADE, {
            "session_token": session_token,
            **decision.summary(),
            "metadata": decision.metadata,
        })

    async def drain(self) -> None:
        """Wait for in-flight publications, used on shutdown"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
