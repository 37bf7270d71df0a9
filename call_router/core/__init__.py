"""Core module for configuration, settings, and shared utilities"""

from .config import settings, get_settings, Settings
from .logging import setup_logging, get_logger
from .exceptions import (
    CallRouterException,
    TenantError,
    TenantNotFoundError,
    TenantInactiveError,
    CallError,
    InvalidTransitionError,
    CoordinationError,
    LockContentionError,
    ConfigurationError,
    WebhookError,
    WebhookValidationError
)

__all__ = [
    # Config
    "settings",
    "get_settings",
    "Settings",
    # Logging
    "setup_logging",
    "get_logger",
    # Exceptions
    "CallRouterException",
    "TenantError",
    "TenantNotFoundError",
    "TenantInactiveError",
    "CallError",
    "InvalidTransitionError",
    "CoordinationError",
    "LockContentionError",
    "ConfigurationError",
    "WebhookError",
    "WebhookValidationError"
]
