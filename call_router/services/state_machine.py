"""
Call State Machine
Enforces the call lifecycle and persists state plus history per session
"""

import json
from collections import deque
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from call_router.core.config import settings
from call_router.core.exceptions import InvalidTransitionError
from call_router.core.logging import get_logger
from call_router.models.call import CallState, StateHistoryEntry
from call_router.services.coordination_store import CoordinationKeys, CoordinationStore

if TYPE_CHECKING:
    from call_router.services.event_publisher import EventPublisher

logger = get_logger(__name__)

TRANSITIONS = {
    CallState.RECEIVED: frozenset({CallState.QUEUED}),
    CallState.QUEUED: frozenset({CallState.ROUTING}),
    CallState.ROUTING: frozenset({CallState.CONNECTING, CallState.FAILED}),
    CallState.CONNECTING: frozenset({
        CallState.CONNECTED,
        CallState.BUSY,
        CallState.FAILED,
        CallState.NO_ANSWER,
    }),
    CallState.CONNECTED: frozenset({CallState.COMPLETED, CallState.BUSY, CallState.FAILED}),
    CallState.COMPLETED: frozenset(),
    CallState.BUSY: frozenset(),
    CallState.FAILED: frozenset(),
    CallState.NO_ANSWER: frozenset(),
}

TERMINAL_STATES = frozenset(state for state, targets in TRANSITIONS.items() if not targets)

STATE_DESCRIPTIONS = {
    CallState.RECEIVED: "Call webhook received",
    CallState.QUEUED: "Call queued for routing",
    CallState.ROUTING: "Routing decision in progress",
    CallState.CONNECTING: "Connecting to voice agent or trunk",
    CallState.CONNECTED: "Call connected",
    CallState.COMPLETED: "Call completed",
    CallState.BUSY: "Destination busy",
    CallState.FAILED: "Call failed",
    CallState.NO_ANSWER: "No answer",
}


class CallStateMachine:
    """
    Lifecycle of one call session.

    Every accepted transition is appended to a history list and the session
    hash is rewritten in the same transaction, so a fresh worker can rebuild
    the machine from the store alone. Callers serialize mutations of a
    session with its routing lock.
    """

    def __init__(
        self,
        store: CoordinationStore,
        tenant_id: int,
        session_token: str,
        state: CallState = CallState.RECEIVED,
        history: Optional[List[StateHistoryEntry]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        attributes: Optional[Dict[str, Any]] = None,
        events: Optional["EventPublisher"] = None
    ):
        self.store = store
        self.tenant_id = tenant_id
        self.session_token = session_token
        self.state = state
        self.history = history or []
        self.metadata = metadata or {}
        self.attributes = attributes or {}
        self.events = events

    @staticmethod
    def can_transition(current: CallState, target: CallState) -> bool:
        return target in TRANSITIONS.get(current, frozenset())

    @staticmethod
    def allowed_transitions(state: CallState) -> frozenset:
        return TRANSITIONS.get(state, frozenset())

    @staticmethod
    def path_to(current: CallState, target: CallState) -> Optional[List[CallState]]:
        """Shortest chain of legal transitions from current to target, excluding current"""
        if current == target:
            return []

        parents = {current: None}
        queue = deque([current])
        while queue:
            state = queue.popleft()
            for nxt in sorted(TRANSITIONS[state], key=lambda s: s.value):
                if nxt in parents:
                    continue
                parents[nxt] = state
                if nxt == target:
                    path = [nxt]
                    while parents[path[-1]] != current:
                        path.append(parents[path[-1]])
                    return list(reversed(path))
                queue.append(nxt)
        return None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def state_key(self) -> str:
        return CoordinationKeys.session_state(self.tenant_id, self.session_token)

    @property
    def history_key(self) -> str:
        return CoordinationKeys.session_history(self.tenant_id, self.session_token)

    @classmethod
    async def start(
        cls,
        store: CoordinationStore,
        tenant_id: int,
        session_token: str,
        attributes: Optional[Dict[str, Any]] = None,
        events: Optional["EventPublisher"] = None
    ) -> "CallStateMachine":
        """Create a session in the received state and persist it"""
        machine = cls(store, tenant_id, session_token, attributes=attributes, events=events)
        entry = StateHistoryEntry(
            to_state=CallState.RECEIVED,
            metadata={"description": STATE_DESCRIPTIONS[CallState.RECEIVED]}
        )
        await machine._persist(CallState.RECEIVED, entry, machine.metadata)
        machine.history.append(entry)
        return machine

    @classmethod
    async def load(
        cls,
        store: CoordinationStore,
        tenant_id: int,
        session_token: str,
        events: Optional["EventPublisher"] = None
    ) -> Optional["CallStateMachine"]:
        """Rebuild a session from the store; None when it was never created or has expired"""
        state_key = CoordinationKeys.session_state(tenant_id, session_token)
        data = await store.hash_get_all(state_key)
        if not data or "current_state" not in data:
            return None

        raw_history = await store.list_range(CoordinationKeys.session_history(tenant_id, session_token))
        history = [StateHistoryEntry.model_validate_json(item) for item in raw_history]

        machine = cls(
            store,
            tenant_id,
            session_token,
            state=CallState(data["current_state"]),
            history=history,
            metadata=json.loads(data.get("metadata") or "{}"),
            attributes=json.loads(data.get("attributes") or "{}"),
            events=events
        )
        if not machine.validate_integrity():
            logger.warning(f"Session {session_token} history does not replay to {machine.state.value}")
        return machine

    async def transition(self, target: CallState, metadata: Optional[Dict[str, Any]] = None) -> StateHistoryEntry:
        """Move to target; raises InvalidTransitionError without touching any state"""
        target = CallState(target)
        if not self.can_transition(self.state, target):
            raise InvalidTransitionError(self.session_token, self.state.value, target.value)

        metadata = metadata or {}
        entry = StateHistoryEntry(
            from_state=self.state,
            to_state=target,
            metadata={"description": STATE_DESCRIPTIONS[target], **metadata}
        )
        merged = {**self.metadata, **metadata}

        await self._persist(target, entry, merged)

        previous = self.state
        self.state = target
        self.metadata = merged
        self.history.append(entry)

        logger.info(f"Session {self.session_token}: {previous.value} -> {target.value}")
        if self.events is not None:
            self.events.call_state_changed(self.tenant_id, self.session_token, previous, target, metadata)
        return entry

    async def advance_to(self, target: CallState, metadata: Optional[Dict[str, Any]] = None) -> bool:
        """
        Walk the shortest legal path to target.

        Carrier updates can skip intermediate states we never saw; those are
        filled in and flagged as inferred. Returns False when target is not
        reachable from the current state.
        """
        target = CallState(target)
        path = self.path_to(self.state, target)
        if path is None:
            logger.warning(
                f"Session {self.session_token}: cannot reach {target.value} from {self.state.value}"
            )
            return False

        for step in path:
            step_metadata = dict(metadata or {}) if step == target else {"inferred": True}
            await self.transition(step, step_metadata)
        return True

    async def update_attributes(self, **attributes: Any) -> None:
        """Record extra session facts such as the chosen target"""
        merged = {**self.attributes, **attributes}
        await self.store.update_session(
            self.state_key,
            {"attributes": json.dumps(merged, default=str)},
            self.history_key,
            settings.session_ttl_seconds
        )
        self.attributes = merged

    def validate_integrity(self) -> bool:
        """Replay history from the initial state and compare with the current state"""
        if not self.history:
            return self.state == CallState.RECEIVED

        replayed: Optional[CallState] = None
        for entry in self.history:
            if replayed is None:
                if entry.from_state is not None or entry.to_state != CallState.RECEIVED:
                    return False
                replayed = CallState.RECEIVED
                continue
            if entry.from_state != replayed or not self.can_transition(replayed, entry.to_state):
                return False
            replayed = entry.to_state

        return replayed == self.state

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_token": self.session_token,
            "tenant_id": self.tenant_id,
            "current_state": self.state.value,
            "description": STATE_DESCRIPTIONS[self.state],
            "is_terminal": self.is_terminal,
            "allowed_transitions": sorted(s.value for s in self.allowed_transitions(self.state)),
            "metadata": self.metadata,
            "attributes": self.attributes,
            "history": [entry.model_dump(mode="json") for entry in self.history],
        }

    async def _persist(self, state: CallState, entry: StateHistoryEntry, metadata: Dict[str, Any]) -> None:
        await self.store.save_session(
            self.state_key,
            {
                "current_state": state.value,
                "session_token": self.session_token,
                "tenant_id": str(self.tenant_id),
                "last_transition": entry.timestamp.isoformat(),
                "metadata": json.dumps(metadata, default=str),
                "attributes": json.dumps(self.attributes, default=str),
                "history_count": str(len(self.history) + 1),
            },
            self.history_key,
            entry.model_dump_json(),
            settings.session_ttl_seconds
        )
