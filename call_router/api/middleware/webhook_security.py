"""
Webhook Security Middleware
Validates carrier webhook signatures
"""

import hmac
import hashlib
from typing import Optional
from fastapi import Request

from call_router.core.config import settings
from call_router.core.logging import get_logger
from call_router.core.exceptions import WebhookValidationError

logger = get_logger(__name__)


class CarrierWebhookValidator:
    """
    Validates carrier webhook signatures: hex HMAC-SHA256 of the raw body,
    keyed with the shared webhook secret
    """

    def __init__(self, secret: Optional[str] = None, header: Optional[str] = None):
        self.secret = secret if secret is not None else settings.webhook_secret
        self.header = header or settings.webhook_signature_header

    def compute_signature(self, payload: bytes) -> str:
        """Compute expected signature"""
        signature = hmac.new(
            self.secret.encode("utf-8"),
            payload,
            hashlib.sha256
        )
        return signature.hexdigest()

    async def validate(self, request: Request) -> bool:
        """
        Validate carrier webhook request

        Args:
            request: FastAPI request object

        Returns:
            True if valid, raises WebhookValidationError if invalid
        """
        signature = request.headers.get(self.header)
        if not signature:
            logger.warning(f"Missing {self.header} header")
            raise WebhookValidationError("Missing webhook signature")

        body = await request.body()
        expected_signature = self.compute_signature(body)

        if not hmac.compare_digest(signature.strip().lower(), expected_signature):
            logger.warning("Invalid carrier webhook signature")
            raise WebhookValidationError("Invalid webhook signature")

        return True


class WebhookValidator:
    """
    Carrier webhook validation with the development bypass
    """

    def __init__(self, carrier: Optional[CarrierWebhookValidator] = None):
        self.carrier = carrier or CarrierWebhookValidator()

    async def validate_carrier(self, request: Request) -> bool:
        # Skip validation in development mode
        if settings.is_development:
            logger.debug("Skipping carrier webhook validation in development mode")
            return True
        if not self.carrier.secret:
            logger.debug("No webhook secret configured, skipping signature validation")
            return True
        return await self.carrier.validate(request)


# Singleton instance
_webhook_validator: Optional[WebhookValidator] = None


def get_webhook_validator() -> WebhookValidator:
    """Get webhook validator singleton"""
    global _webhook_validator
    if _webhook_validator is None:
        _webhook_validator = WebhookValidator()
    return _webhook_validator


async def validate_carrier_webhook(request: Request):
    """
    Dependency for validating carrier webhooks

    Usage:
        @router.post("/webhook")
        async def webhook(request: Request, _: bool = Depends(validate_carrier_webhook)):
            ...
    """
    validator = get_webhook_validator()
    return await validator.validate_carrier(request)
