"""
Tenant Configuration Models
Read-only view of the tenants, voice agents and trunks the administrative side manages
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive timestamps from the snapshot as UTC so they compare safely"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class VoiceAgentProvider(str, Enum):
    """AI voice platforms an agent can be connected to"""
    VAPI = "vapi"
    SYNTHFLOW = "synthflow"
    DASHA = "dasha"
    SUPERDASH_AI = "superdash.ai"
    ELEVENLABS = "elevenlabs"
    DEEPVOX = "deepvox"
    RELAYHAWK = "relayhawk"
    VOICEHUB = "voicehub"
    RETELL = "retell"
    RETELL_UDP = "retell-udp"
    RETELL_TCP = "retell-tcp"
    RETELL_TLS = "retell-tls"
    FONIO = "fonio"
    SIGMAMIND = "sigmamind"
    MODON = "modon"
    PURETALK = "puretalk"
    MILLIS_US = "millis-us"
    MILLIS_EU = "millis-eu"

    @property
    def requires_authentication(self) -> bool:
        return self in _AUTHENTICATED_PROVIDERS


_AUTHENTICATED_PROVIDERS = frozenset({
    VoiceAgentProvider.SYNTHFLOW,
    VoiceAgentProvider.SUPERDASH_AI,
    VoiceAgentProvider.ELEVENLABS,
})


class Tenant(BaseModel):
    """Isolation boundary; every webhook is resolved to one tenant by its domain"""
    id: int = Field(..., description="Tenant identifier")
    name: str = Field(..., description="Display name")
    domain: str = Field(..., description="Unique carrier domain")
    is_active: bool = Field(default=True)

    @field_validator("domain")
    @classmethod
    def normalize_domain(cls, value: str) -> str:
        return value.strip().lower()


class VoiceAgent(BaseModel):
    """A connected AI call-handling endpoint"""
    id: int
    tenant_id: int
    name: str
    provider: VoiceAgentProvider
    service_value: str = Field(..., description="Provider connection descriptor placed in the dial instruction")
    username: Optional[str] = Field(default=None)
    password: Optional[str] = Field(default=None)
    enabled: bool = Field(default=True)
    max_concurrent_calls: Optional[int] = Field(
        default=None,
        ge=1,
        description="Concurrent call ceiling; unlimited when absent"
    )
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)

    @property
    def is_routable(self) -> bool:
        """Enabled and carrying whatever credentials its provider needs"""
        if not self.enabled:
            return False
        if self.provider.requires_authentication and not self.has_credentials:
            return False
        return True


class Trunk(BaseModel):
    """Carrier trunk used for outbound calls"""
    id: int
    tenant_id: int
    name: str
    carrier_trunk_id: str = Field(..., description="Trunk identifier understood by the carrier")
    description: Optional[str] = None
    priority: int = Field(default=100)
    capacity: int = Field(default=0, description="Concurrent call limit, 0 or less means unlimited")
    enabled: bool = Field(default=True)
    is_default: bool = Field(default=False)
    configuration: Dict[str, Any] = Field(default_factory=dict)
