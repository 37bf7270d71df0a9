"""Utility modules"""

from .retry import RetryError, retry_async_operation

__all__ = ["RetryError", "retry_async_operation"]
