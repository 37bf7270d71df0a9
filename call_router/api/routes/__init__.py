"""API routes"""

from . import health, webhooks

__all__ = ["health", "webhooks"]
