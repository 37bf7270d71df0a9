"""
Configuration management for the Call Router
Uses Pydantic Settings for environment variable management
"""

from functools import lru_cache
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application Settings
    debug: bool = Field(default=True)
    log_level: str = Field(default="INFO")
    environment: str = Field(default="development")

    # Server Configuration
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=8000)
    api_base_url: str = Field(default="http://localhost:8000")

    # CORS Settings
    allowed_origins: str = Field(default="http://localhost:3000,http://localhost:8000")

    # Coordination Store (Redis)
    redis_url: str = Field(default="redis://localhost:6379/0")
    redis_max_connections: int = Field(default=100)
    redis_socket_timeout: float = Field(default=5.0)
    redis_connect_timeout: float = Field(default=5.0)

    # Idempotency
    idempotency_ttl_seconds: int = Field(default=86400)

    # Locking
    routing_lock_ttl_seconds: int = Field(default=30)
    group_lock_ttl_seconds: int = Field(default=10)
    lock_max_attempts: int = Field(default=3)
    lock_retry_delay: float = Field(default=0.1)

    # Call Sessions
    session_ttl_seconds: int = Field(default=86400)

    # Load-balanced window keys live this much longer than the window itself
    load_window_buffer_seconds: int = Field(default=3600)

    # Routing configuration snapshot
    routing_config_path: str = Field(default="routing_config.json")

    # Carrier Webhooks
    webhook_secret: Optional[str] = Field(default=None)
    webhook_signature_header: str = Field(default="X-Cloudonix-Signature")
    dial_action_url: Optional[str] = Field(default=None)

    @property
    def cors_origins(self) -> List[str]:
        """Parse CORS origins from comma-separated string"""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_development(self) -> bool:
        return self.debug and self.environment == "development"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
