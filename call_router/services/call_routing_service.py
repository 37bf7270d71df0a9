"""
Call Routing Service
Coordinates idempotency, locking, routing and the state machine for each carrier webhook
"""

from typing import Any, Callable, Dict, Optional, Tuple

from call_router.core.config import settings
from call_router.core.exceptions import CoordinationError, LockContentionError
from call_router.core.logging import get_logger
from call_router.models.call import (
    CallContext,
    CallStartPayload,
    CallState,
    CdrDisposition,
    CdrPayload,
    RoutingDecision,
    SessionUpdatePayload
)
from call_router.models.routing import GroupSnapshot
from call_router.models.tenant import Tenant
from call_router.services.config_service import ConfigurationService, get_configuration_service
from call_router.services.coordination_store import CoordinationKeys, CoordinationStore, get_coordination_store
from call_router.services.cxml_service import CxmlService, get_cxml_service
from call_router.services.event_publisher import EventPublisher
from call_router.services.idempotency import PROCESSING, IdempotencyGuard
from call_router.services.locking import DistributedLock
from call_router.services.routing_engine import AgentLoadTracker, RoutingEngine
from call_router.services.state_machine import CallStateMachine
from call_router.services.strategies import StrategyFactory
from call_router.utils.retry import RetryError, retry_async_operation

logger = get_logger(__name__)

EVENT_CALL_START = "call_start"
EVENT_SESSION_UPDATE = "session_update"
EVENT_CDR = "cdr"


class ResponsePending(Exception):
    """Internal signal that the first delivery of a call start has not stored its document yet"""


class CallRoutingService:
    """
    One instance per worker; all shared state lives in the coordination store.

    Every webhook is claimed through the idempotency guard first and then
    handled under the session's routing lock, so redeliveries and concurrent
    updates for the same call never interleave.
    """

    def __init__(
        self,
        store: Optional[CoordinationStore] = None,
        config: Optional[ConfigurationService] = None,
        cxml: Optional[CxmlService] = None,
        clock: Optional[Callable[[], float]] = None
    ):
        self.store = store or get_coordination_store()
        self.config = config or get_configuration_service()
        self.cxml = cxml or get_cxml_service()
        self.lock = DistributedLock(self.store)
        self.guard = IdempotencyGuard(self.store)
        self.events = EventPublisher(self.store)
        self.strategies = StrategyFactory(self.store, self.lock, clock)
        self.load_tracker = AgentLoadTracker(self.store)
        self.engine = RoutingEngine(self.config, self.strategies, self.load_tracker)
        self._pending_resets: Dict[Tuple[int, int], GroupSnapshot] = {}

    async def refresh_configuration(self) -> int:
        """Pick up a changed snapshot and reset strategy state of the groups it touched"""
        for group in self.config.refresh():
            self._pending_resets[(group.tenant_id, group.group_id)] = group

        reset = 0
        for key, group in list(self._pending_resets.items()):
            try:
                await self.strategies.reset_group_state(group)
            except CoordinationError as e:
                logger.error(f"Could not reset state for group {group.group_id}, will retry: {e.message}")
                continue
            del self._pending_resets[key]
            reset += 1
        return reset

    # Call start

    async def handle_call_start(
        self,
        tenant: Tenant,
        payload: CallStartPayload,
        event_id: str,
        application_id: Optional[str] = None
    ) -> str:
        """Route a new call and return the cXML document for the carrier"""
        token = payload.session_token or payload.call_sid
        call = CallContext(
            session_token=token,
            from_number=payload.from_number.strip(),
            to_number=payload.to_number.strip(),
            direction=self.engine.detect_direction(tenant, payload.from_number, payload.direction),
            application_id=application_id
        )

        if not await self.guard.try_claim(tenant.id, EVENT_CALL_START, token, event_id):
            return await self._replay_response(tenant, token, event_id)

        try:
            document = await self.lock.with_lock(
                CoordinationKeys.routing_lock(tenant.id, token),
                settings.routing_lock_ttl_seconds,
                lambda: self._route_call(tenant, call)
            )
        except Exception:
            await self._release_claim(tenant, EVENT_CALL_START, token, event_id)
            raise

        await self.guard.finalize(tenant.id, EVENT_CALL_START, token, event_id)
        return document

    async def _route_call(self, tenant: Tenant, call: CallContext) -> str:
        machine = await CallStateMachine.load(self.store, tenant.id, call.session_token, events=self.events)
        if machine is not None and machine.state != CallState.RECEIVED:
            logger.warning(f"Session {call.session_token} already {machine.state.value}, not routing again")
            return machine.attributes.get("response_document") or self.cxml.generate_hangup()

        if machine is None:
            machine = await CallStateMachine.start(
                self.store,
                tenant.id,
                call.session_token,
                attributes={
                    "direction": call.direction.value,
                    "from_number": call.from_number,
                    "to_number": call.to_number,
                    "application_id": call.application_id,
                },
                events=self.events
            )

        await machine.transition(CallState.QUEUED)
        await machine.transition(CallState.ROUTING)

        decision = await self.engine.decide(tenant, call)
        try:
            document = self.cxml.render(decision)
            if decision.success and not self.cxml.is_dial(document):
                await self._release_booking(tenant, decision, call.session_token)
                decision = RoutingDecision.hangup("Response generation failed")

            if decision.success:
                await machine.transition(CallState.CONNECTING, {"routing": decision.summary()})
            else:
                await machine.transition(CallState.FAILED, {"reason": decision.reason})

            await machine.update_attributes(decision=decision.summary(), response_document=document)
        except Exception:
            await self._release_booking(tenant, decision, call.session_token)
            raise

        self.events.routing_decision_made(tenant.id, call.session_token, decision)
        return document

    async def _release_booking(self, tenant: Tenant, decision: RoutingDecision, token: str) -> None:
        """Give back the agent slot the engine booked for a decision that will not be used"""
        if decision.agent is None:
            return
        try:
            await self.load_tracker.release(tenant.id, decision.agent.id, token)
        except CoordinationError as e:
            logger.error(f"Could not release agent {decision.agent.id} for session {token}: {e.message}")

    async def _replay_response(self, tenant: Tenant, token: str, event_id: str) -> str:
        """
        Answer a redelivered call-start with the document the first delivery produced

        A first delivery still in flight is waited for on the session's
        routing lock, with the same bounded retries as any lock wait. When it
        does not finish in time the duplicate is hung up.
        """
        async def stored_document() -> Optional[str]:
            lock_key = CoordinationKeys.routing_lock(tenant.id, token)
            async with self.lock.hold(lock_key, settings.routing_lock_ttl_seconds):
                machine = await CallStateMachine.load(self.store, tenant.id, token)
            if machine is not None and machine.attributes.get("response_document"):
                return machine.attributes["response_document"]
            if await self.guard.status(tenant.id, EVENT_CALL_START, token, event_id) == PROCESSING:
                raise ResponsePending(token)
            return None

        try:
            document = await retry_async_operation(
                stored_document,
                max_retries=self.lock.max_attempts,
                delay=self.lock.retry_delay,
                exceptions=(ResponsePending,),
                operation_name=f"replay call start {token}"
            )
        except (RetryError, LockContentionError):
            logger.warning(f"First delivery of call start {token} is still running, hanging up the duplicate")
            document = None

        return document or self.cxml.generate_hangup()

    # Session updates and CDRs

    async def handle_session_update(
        self,
        tenant: Tenant,
        update: SessionUpdatePayload,
        target: CallState
    ) -> bool:
        """Apply a carrier status change; returns True for a duplicate delivery"""
        event_id = f"{update.status.strip().lower()}:{update.modified_at or update.id}"
        duplicate, _ = await self.guard.run_once(
            tenant.id,
            EVENT_SESSION_UPDATE,
            update.token,
            event_id,
            lambda: self.lock.with_lock(
                CoordinationKeys.routing_lock(tenant.id, update.token),
                settings.routing_lock_ttl_seconds,
                lambda: self._apply_session_update(tenant, update, target)
            )
        )
        return duplicate

    async def _apply_session_update(self, tenant: Tenant, update: SessionUpdatePayload, target: CallState) -> bool:
        machine = await CallStateMachine.load(self.store, tenant.id, update.token, events=self.events)
        if machine is None:
            machine = await CallStateMachine.start(
                self.store,
                tenant.id,
                update.token,
                attributes={
                    "direction": update.direction,
                    "from_number": update.caller_id,
                    "to_number": update.destination,
                    "carrier_session_id": update.id,
                },
                events=self.events
            )

        metadata: Dict[str, Any] = {
            "external_status": update.status,
            "carrier_session_id": update.id,
        }
        if update.call_start_time and update.answer_time:
            metadata["answer_delay_seconds"] = max(0, update.answer_time - update.call_start_time) // 1000

        moved = await machine.advance_to(target, metadata)
        if moved and machine.is_terminal:
            await self._release_agent(tenant, machine)
        return moved

    async def handle_cdr(self, tenant: Tenant, cdr: CdrPayload, disposition: CdrDisposition, target: CallState) -> bool:
        """Close out a session from its call detail record; returns True for a duplicate delivery"""
        token = cdr.session_token or cdr.call_id
        duplicate, _ = await self.guard.run_once(
            tenant.id,
            EVENT_CDR,
            token,
            cdr.call_id,
            lambda: self.lock.with_lock(
                CoordinationKeys.routing_lock(tenant.id, token),
                settings.routing_lock_ttl_seconds,
                lambda: self._apply_cdr(tenant, token, cdr, disposition, target)
            )
        )
        return duplicate

    async def _apply_cdr(
        self,
        tenant: Tenant,
        token: str,
        cdr: CdrPayload,
        disposition: CdrDisposition,
        target: CallState
    ) -> bool:
        machine = await CallStateMachine.load(self.store, tenant.id, token, events=self.events)
        if machine is None:
            logger.info(f"CDR {cdr.call_id} for unknown or expired session {token}")
            return False

        await machine.update_attributes(cdr={
            "call_id": cdr.call_id,
            "disposition": disposition.value,
            "duration": cdr.duration,
            "billsec": cdr.billsec,
        })

        moved = False
        if not machine.is_terminal:
            moved = await machine.advance_to(target, {"disposition": disposition.value})
        if machine.is_terminal:
            await self._release_agent(tenant, machine)
        return moved

    async def _release_agent(self, tenant: Tenant, machine: CallStateMachine) -> None:
        agent_id = (machine.attributes.get("decision") or {}).get("agent_id")
        if agent_id is not None:
            await self.load_tracker.release(tenant.id, int(agent_id), machine.session_token)

    async def _release_claim(self, tenant: Tenant, event_type: str, token: str, event_id: str) -> None:
        try:
            await self.guard.release(tenant.id, event_type, token, event_id)
        except CoordinationError as e:
            logger.error(f"Could not release {event_type} claim for session {token}: {e.message}")

    async def get_session(self, tenant: Tenant, token: str) -> Optional[CallStateMachine]:
        return await CallStateMachine.load(self.store, tenant.id, token)

    async def shutdown(self) -> None:
        await self.events.drain()


# Singleton instance
_call_routing_service: Optional[CallRoutingService] = None


def get_call_routing_service() -> CallRoutingService:
    """Get the CallRoutingService singleton instance"""
    global _call_routing_service
    if _call_routing_service is None:
        _call_routing_service = CallRoutingService()
    return _call_routing_service
