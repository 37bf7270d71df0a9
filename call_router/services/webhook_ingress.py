"""
Webhook Ingress
Reads, validates and normalizes carrier webhooks and resolves their tenant
"""

import json
import re
from typing import Any, Dict, Optional, Tuple, Type, TypeVar

from fastapi import Request
from pydantic import BaseModel, ValidationError as PydanticValidationError

from call_router.core.exceptions import WebhookValidationError
from call_router.core.logging import get_logger
from call_router.models.call import (
    CallStartPayload,
    CallState,
    CdrDisposition,
    CdrPayload,
    SessionUpdatePayload
)
from call_router.models.tenant import Tenant
from call_router.services.config_service import ConfigurationService

logger = get_logger(__name__)

PayloadT = TypeVar("PayloadT", bound=BaseModel)

DOMAIN_HEADER = "x-cloudonix-domain"
DOMAIN_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9\-.]*[a-z0-9])?$")

SESSION_STATUS_MAP = {
    "new": CallState.RECEIVED,
    "processing": CallState.ROUTING,
    "ringing": CallState.CONNECTING,
    "connected": CallState.CONNECTED,
    "answer": CallState.CONNECTED,
    "answered": CallState.CONNECTED,
    "noanswer": CallState.FAILED,
    "busy": CallState.BUSY,
    "nocredit": CallState.FAILED,
    "cancel": CallState.FAILED,
    "external": CallState.FAILED,
    "error": CallState.FAILED,
    "failed": CallState.FAILED,
    "completed": CallState.COMPLETED,
}

DISPOSITION_MAP = {
    "CONNECTED": CdrDisposition.ANSWER,
    "ANSWERED": CdrDisposition.ANSWER,
    "ANSWER": CdrDisposition.ANSWER,
    "BUSY": CdrDisposition.BUSY,
    "CANCEL": CdrDisposition.CANCEL,
    "FAILED": CdrDisposition.FAILED,
    "CONGESTION": CdrDisposition.CONGESTION,
    "NOANSWER": CdrDisposition.NOANSWER,
    "NO ANSWER": CdrDisposition.NOANSWER,
}

DISPOSITION_STATES = {
    CdrDisposition.ANSWER: CallState.COMPLETED,
    CdrDisposition.BUSY: CallState.BUSY,
    CdrDisposition.NOANSWER: CallState.NO_ANSWER,
    CdrDisposition.CANCEL: CallState.FAILED,
    CdrDisposition.FAILED: CallState.FAILED,
    CdrDisposition.CONGESTION: CallState.FAILED,
}


class WebhookIngress:
    """Front door for the three carrier webhooks"""

    def __init__(self, config: ConfigurationService):
        self.config = config

    @staticmethod
    def map_session_status(status: str) -> CallState:
        """
        Map a carrier session status to an internal lifecycle state

        Args:
            status: Status from the session-update webhook

        Returns:
            Internal CallState; unknown values count as still connecting
        """
        return SESSION_STATUS_MAP.get(status.strip().lower(), CallState.CONNECTING)

    @staticmethod
    def map_disposition(disposition: Optional[str]) -> CdrDisposition:
        if not disposition:
            return CdrDisposition.FAILED
        return DISPOSITION_MAP.get(disposition.strip().upper(), CdrDisposition.FAILED)

    @staticmethod
    def disposition_state(disposition: CdrDisposition) -> CallState:
        return DISPOSITION_STATES[disposition]

    @staticmethod
    async def read_payload(request: Request) -> Dict[str, Any]:
        """Read a JSON or form-encoded body into a flat dict"""
        content_type = request.headers.get("content-type", "")
        try:
            if "application/json" in content_type:
                data = await request.json()
            else:
                form = await request.form()
                data = dict(form)
        except (json.JSONDecodeError, UnicodeDecodeError, ValueError) as e:
            logger.warning(f"Unreadable webhook body: {e}")
            raise WebhookValidationError()

        if not isinstance(data, dict):
            raise WebhookValidationError()
        return data

    @staticmethod
    def extract_domain(request: Request, payload: Dict[str, Any]) -> str:
        domain = (
            request.headers.get(DOMAIN_HEADER)
            or payload.get("domain")
            or payload.get("Domain")
            or payload.get("SipDomain")
        )
        if not domain or not isinstance(domain, str):
            logger.warning("Webhook without a tenant domain")
            raise WebhookValidationError("Tenant domain required")

        domain = domain.strip().lower()
        if not DOMAIN_PATTERN.match(domain):
            logger.warning(f"Webhook with malformed domain: {domain}")
            raise WebhookValidationError("Invalid tenant domain")
        return domain

    @staticmethod
    def validate(model: Type[PayloadT], payload: Dict[str, Any]) -> PayloadT:
        try:
            return model.model_validate(payload)
        except PydanticValidationError as e:
            logger.warning(f"Invalid {model.__name__}: {e.error_count()} error(s)")
            raise WebhookValidationError()

    def resolve_tenant(self, domain: str) -> Tenant:
        return self.config.resolve_tenant(domain)

    async def parse_call_start(self, request: Request) -> Tuple[Tenant, CallStartPayload]:
        payload = await self.read_payload(request)
        call = self.validate(CallStartPayload, payload)
        tenant = self.resolve_tenant(self.extract_domain(request, payload))
        return tenant, call

    async def parse_session_update(self, request: Request) -> Tuple[Tenant, SessionUpdatePayload]:
        payload = await self.read_payload(request)
        update = self.validate(SessionUpdatePayload, payload)
        tenant = self.resolve_tenant(self.extract_domain(request, payload))
        return tenant, update

    async def parse_cdr(self, request: Request) -> Tuple[Tenant, CdrPayload]:
        payload = await self.read_payload(request)
        cdr = self.validate(CdrPayload, payload)
        tenant = self.resolve_tenant(self.extract_domain(request, payload))
        return tenant, cdr
