"""Call Router - multi-tenant voice call routing core"""

__version__ = "1.0.0"
