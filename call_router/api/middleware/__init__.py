"""Request validation middleware"""

from .webhook_security import (
    CarrierWebhookValidator,
    WebhookValidator,
    get_webhook_validator,
    validate_carrier_webhook
)

__all__ = [
    "CarrierWebhookValidator",
    "WebhookValidator",
    "get_webhook_validator",
    "validate_carrier_webhook"
]
