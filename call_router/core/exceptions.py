"""
Custom Exceptions for the Call Router
Provides structured error handling across the application
"""

from typing import Optional, Dict, Any


class CallRouterException(Exception):
    """Base exception for all call router errors"""

    def __init__(
        self,
        message: str,
        error_code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None,
        status_code: int = 500
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details
        }


# Tenant Exceptions
class TenantError(CallRouterException):
    """Base exception for tenant-related errors"""
    pass


class TenantNotFoundError(TenantError):
    """Raised when no tenant owns the webhook domain"""

    def __init__(self, domain: str):
        super().__init__(
            message="Tenant not found",
            error_code="TENANT_NOT_FOUND",
            details={"domain": domain},
            status_code=404
        )


class TenantInactiveError(TenantError):
    """Raised when the tenant exists but is switched off"""

    def __init__(self, domain: str):
        super().__init__(
            message="Tenant not found",
            error_code="TENANT_INACTIVE",
            details={"domain": domain},
            status_code=404
        )


# Call Exceptions
class CallError(CallRouterException):
    """Base exception for call-related errors"""
    pass


class InvalidTransitionError(CallError):
    """Raised when a session is asked to move along an edge the lifecycle does not allow"""

    def __init__(self, session_token: str, current_state: str, target_state: str):
        super().__init__(
            message=f"Invalid transition from {current_state} to {target_state} for session {session_token}",
            error_code="INVALID_STATE_TRANSITION",
            details={
                "session_token": session_token,
                "current_state": current_state,
                "target_state": target_state
            },
            status_code=409
        )


# Coordination Store Exceptions
class CoordinationError(CallRouterException):
    """Raised when the coordination store cannot be reached; safe to retry"""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(
            message=message,
            error_code="COORDINATION_UNAVAILABLE",
            details={"operation": operation, "retryable": True} if operation else {"retryable": True},
            status_code=503
        )


class LockContentionError(CoordinationError):
    """Raised when a lock could not be acquired within the bounded retries"""

    def __init__(self, lock_key: str, attempts: int):
        super().__init__(
            message=f"Could not acquire lock {lock_key} after {attempts} attempts",
            operation="lock"
        )
        self.error_code = "LOCK_CONTENTION"
        self.details["lock_key"] = lock_key
        self.details["attempts"] = attempts


# Configuration Exceptions
class ConfigurationError(CallRouterException):
    """Raised when the routing configuration snapshot cannot be loaded"""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(
            message=message,
            error_code="CONFIGURATION_ERROR",
            details={"path": path} if path else {},
            status_code=500
        )


# Webhook Exceptions
class WebhookError(CallRouterException):
    """Base exception for webhook errors"""
    pass


class WebhookValidationError(WebhookError):
    """Raised when a webhook is unsigned, badly signed or malformed"""

    def __init__(self, message: str = "Invalid webhook request"):
        super().__init__(
            message=message,
            error_code="WEBHOOK_VALIDATION_FAILED",
            status_code=400
        )
