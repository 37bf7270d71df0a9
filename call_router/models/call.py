"""
Data models for call sessions, routing decisions and carrier webhooks
"""

from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from .tenant import VoiceAgent, Trunk, utc_now
from .routing import AgentGroup


class CallState(str, Enum):
    """Lifecycle state of a call session"""
    RECEIVED = "received"
    QUEUED = "queued"
    ROUTING = "routing"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    COMPLETED = "completed"
    BUSY = "busy"
    FAILED = "failed"
    NO_ANSWER = "no_answer"


class CallDirection(str, Enum):
    """Direction of the call"""
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class CdrDisposition(str, Enum):
    """Final outcome reported in a call detail record"""
    ANSWER = "ANSWER"
    BUSY = "BUSY"
    CANCEL = "CANCEL"
    FAILED = "FAILED"
    CONGESTION = "CONGESTION"
    NOANSWER = "NOANSWER"


class StateHistoryEntry(BaseModel):
    """One recorded transition of a session"""
    from_state: Optional[CallState] = None
    to_state: CallState
    timestamp: datetime = Field(default_factory=utc_now)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CallContext(BaseModel):
    """Normalized attributes of a call being routed"""
    session_token: str
    from_number: str
    to_number: str
    direction: CallDirection = CallDirection.INBOUND
    application_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RoutingType(str, Enum):
    """How a decision was reached"""
    VOICE_AGENT = "voice_agent"
    AGENT_GROUP = "agent_group"
    OUTBOUND_RULE = "outbound_rule"
    DEFAULT_TRUNK = "default_trunk"
    FALLBACK_TRUNK = "fallback_trunk"
    HANGUP = "hangup"


TRUNK_ROUTING_TYPES = frozenset({
    RoutingType.OUTBOUND_RULE,
    RoutingType.DEFAULT_TRUNK,
    RoutingType.FALLBACK_TRUNK,
})


class RoutingDecision(BaseModel):
    """
    Outcome of routing one call.

    Carries exactly one target: an agent, a group plus the agent it picked,
    a trunk, or nothing at all for a hangup.
    """
    success: bool
    routing_type: RoutingType
    agent: Optional[VoiceAgent] = None
    group: Optional[AgentGroup] = None
    trunk: Optional[Trunk] = None
    trunk_ids: List[str] = Field(default_factory=list)
    destination: Optional[str] = None
    caller_id: Optional[str] = None
    rule_id: Optional[int] = None
    ring_timeout: Optional[int] = None
    max_duration: Optional[int] = None
    reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_single_outcome(self) -> "RoutingDecision":
        if self.routing_type == RoutingType.HANGUP:
            if self.success or self.agent or self.group or self.trunk:
                raise ValueError("A hangup decision carries no target")
            if not self.reason:
                raise ValueError("A hangup decision needs a reason")
        elif self.routing_type == RoutingType.VOICE_AGENT:
            if self.agent is None or self.group is not None or self.trunk is not None:
                raise ValueError("A voice agent decision carries exactly one agent")
        elif self.routing_type == RoutingType.AGENT_GROUP:
            if self.agent is None or self.group is None or self.trunk is not None:
                raise ValueError("A group decision carries the group and its selected agent")
        elif self.trunk is None or self.agent is not None or self.group is not None:
            raise ValueError("A trunk decision carries exactly one trunk")
        return self

    @classmethod
    def to_agent(
        cls,
        agent: VoiceAgent,
        caller_id: Optional[str] = None,
        rule_id: Optional[int] = None,
        **metadata
    ) -> "RoutingDecision":
        return cls(
            success=True,
            routing_type=RoutingType.VOICE_AGENT,
            agent=agent,
            caller_id=caller_id,
            rule_id=rule_id,
            metadata={
                "agent_id": agent.id,
                "agent_name": agent.name,
                "provider": agent.provider.value,
                **metadata
            }
        )

    @classmethod
    def to_group(
        cls,
        group: AgentGroup,
        agent: VoiceAgent,
        caller_id: Optional[str] = None,
        rule_id: Optional[int] = None,
        **metadata
    ) -> "RoutingDecision":
        return cls(
            success=True,
            routing_type=RoutingType.AGENT_GROUP,
            agent=agent,
            group=group,
            caller_id=caller_id,
            rule_id=rule_id,
            metadata={
                "group_id": group.id,
                "group_name": group.name,
                "strategy": group.strategy.value,
                "selected_agent_id": agent.id,
                "agent_name": agent.name,
                "provider": agent.provider.value,
                **metadata
            }
        )

    @classmethod
    def to_trunk(
        cls,
        routing_type: RoutingType,
        trunk: Trunk,
        destination: str,
        caller_id: Optional[str] = None,
        trunk_ids: Optional[List[str]] = None,
        rule_id: Optional[int] = None,
        ring_timeout: Optional[int] = None,
        max_duration: Optional[int] = None
    ) -> "RoutingDecision":
        if routing_type not in TRUNK_ROUTING_TYPES:
            raise ValueError(f"{routing_type.value} is not a trunk routing type")
        return cls(
            success=True,
            routing_type=routing_type,
            trunk=trunk,
            trunk_ids=trunk_ids or [trunk.carrier_trunk_id],
            destination=destination,
            caller_id=caller_id,
            rule_id=rule_id,
            ring_timeout=ring_timeout,
            max_duration=max_duration,
            metadata={
                "trunk_id": trunk.id,
                "trunk_name": trunk.name,
                "rule_id": rule_id
            }
        )

    @classmethod
    def hangup(cls, reason: str, **metadata) -> "RoutingDecision":
        return cls(
            success=False,
            routing_type=RoutingType.HANGUP,
            reason=reason,
            metadata=metadata
        )

    def summary(self) -> Dict[str, Any]:
        """Compact form for logs, events and session metadata"""
        return {
            "success": self.success,
            "routing_type": self.routing_type.value,
            "agent_id": self.agent.id if self.agent else None,
            "group_id": self.group.id if self.group else None,
            "trunk_id": self.trunk.id if self.trunk else None,
            "rule_id": self.rule_id,
            "reason": self.reason,
        }


class CallStartPayload(BaseModel):
    """Call-start webhook body (form or JSON)"""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    call_sid: str = Field(
        ...,
        min_length=1,
        max_length=128,
        validation_alias=AliasChoices("CallSid", "CallId", "call_sid")
    )
    from_number: str = Field(
        ...,
        min_length=1,
        max_length=64,
        validation_alias=AliasChoices("From", "from", "from_number")
    )
    to_number: str = Field(
        ...,
        min_length=1,
        max_length=64,
        validation_alias=AliasChoices("To", "to", "to_number")
    )
    direction: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("Direction", "direction")
    )
    domain: Optional[str] = Field(default=None, validation_alias=AliasChoices("domain", "Domain"))
    sip_domain: Optional[str] = Field(default=None, validation_alias=AliasChoices("SipDomain", "sip_domain"))
    session_token: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("SessionToken", "session_token", "token")
    )


class SessionUpdatePayload(BaseModel):
    """Session-update webhook body"""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: int
    domain: str = Field(..., min_length=1)
    token: str = Field(..., min_length=1)
    status: str = Field(..., min_length=1)
    caller_id: Optional[str] = Field(default=None, alias="callerId")
    destination: Optional[str] = None
    direction: Optional[str] = None
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    modified_at: Optional[str] = Field(default=None, alias="modifiedAt")
    call_start_time: Optional[int] = Field(default=None, alias="callStartTime")
    answer_time: Optional[int] = Field(default=None, alias="answerTime")
    vapp_server: Optional[str] = Field(default=None, alias="vappServer")


class CdrSession(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    token: Optional[str] = None
    call_start_time: Optional[int] = Field(default=None, alias="callStartTime")
    call_answer_time: Optional[int] = Field(default=None, alias="callAnswerTime")
    call_end_time: Optional[int] = Field(default=None, alias="callEndTime")
    vapp_server: Optional[str] = Field(default=None, alias="vappServer")


class CdrPayload(BaseModel):
    """Call detail record webhook body"""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    call_id: str = Field(..., min_length=1)
    domain: str = Field(..., min_length=1)
    from_number: Optional[str] = Field(default=None, alias="from")
    to_number: Optional[str] = Field(default=None, alias="to")
    disposition: str = Field(default="FAILED")
    duration: int = Field(default=0, ge=0)
    billsec: int = Field(default=0, ge=0)
    session: Optional[CdrSession] = None

    @property
    def session_token(self) -> Optional[str]:
        return self.session.token if self.session else None
