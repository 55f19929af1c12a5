"""
Application settings configuration for ServiceBell.

Centralized settings loaded from environment variables (and a local .env file).
"""

from functools import lru_cache
from typing import Dict, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class AppSettings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Environment Variables:
        SERVICEBELL_ENV: Environment name (production, development, test)
        JWT_SECRET_KEY: Shared secret used to verify access tokens issued by the
            authentication service (HS256)
        VAPID_PUBLIC_KEY: Web Push VAPID public key (Base64url-encoded)
        VAPID_PRIVATE_KEY: Web Push VAPID private key (Base64url-encoded)
        VAPID_SUBJECT: VAPID subject identifier (mailto: or https: URL)
        SERVICEBELL_CRON_SECRET: Bearer secret required by the cron endpoints
        SERVICEBELL_MAX_ATTEMPTS: Delivery attempts before an intent fails (default: 5)
        SERVICEBELL_DISPATCH_BATCH_SIZE: Intents claimed per dispatch batch (default: 50)
        SERVICEBELL_DISPATCH_INTERVAL_SECONDS: Scheduler wake-up interval (default: 30)
        SERVICEBELL_PUSH_TIMEOUT_SECONDS: Push gateway request timeout (default: 10)
        SERVICEBELL_PUSH_TTL_SECONDS: Push message TTL at the gateway (default: 86400)
        SERVICEBELL_SYNC_BATCH_SIZE: Entries returned per sync pull (default: 10)
        SERVICEBELL_HEARTBEAT_INTERVAL_SECONDS: Interval advertised to devices (default: 30)
        SERVICEBELL_ACK_RETENTION_DAYS: Acknowledgement history kept (default: 30)
        SERVICEBELL_SUBSCRIPTION_INACTIVE_DAYS: Silence before a subscription is
            deactivated, and age at which inactive ones are deleted (default: 7)
        SERVICEBELL_INTENT_RETENTION_DAYS: Finished intents kept (default: 30)
        SERVICEBELL_CLAIM_TIMEOUT_SECONDS: Age of a processing claim before it is
            handed back to the queue (default: 300)
        SERVICEBELL_DISPATCH_ENABLED: Run the in-process dispatch scheduler (default: True)
        SERVICEBELL_CORS_ORIGINS: Comma-separated allowed origins
        RATE_LIMIT_STORAGE_URI: Storage backend URI for rate limiting (default: "memory://")
    """

    env: str = Field(default="development", validation_alias="SERVICEBELL_ENV")

    jwt_secret_key: str = Field(
        default="",
        validation_alias="JWT_SECRET_KEY",
        description="Secret used to verify HS256 access tokens. Must be at least 32 bytes."
    )

    # VAPID settings for Web Push notifications
    vapid_public_key: str = Field(
        default="",
        validation_alias="VAPID_PUBLIC_KEY",
        description="Base64url-encoded VAPID public key handed to devices at opt-in"
    )

    vapid_private_key: str = Field(
        default="",
        validation_alias="VAPID_PRIVATE_KEY",
        description="Base64url-encoded VAPID private key for signing push messages"
    )

    vapid_subject: str = Field(
        default="mailto:notifications@localhost",
        validation_alias="VAPID_SUBJECT",
        description="VAPID subject (mailto: or https: URL identifying the push sender)"
    )

    cron_secret: str = Field(
        default="",
        validation_alias="SERVICEBELL_CRON_SECRET",
        description="Shared secret expected as 'Authorization: Bearer <secret>' on cron endpoints"
    )

    # Outbox and dispatch
    max_attempts: int = Field(default=5, validation_alias="SERVICEBELL_MAX_ATTEMPTS", ge=1, le=50)
    dispatch_batch_size: int = Field(
        default=50, validation_alias="SERVICEBELL_DISPATCH_BATCH_SIZE", ge=1, le=1000
    )
    dispatch_interval_seconds: float = Field(
        default=30.0, validation_alias="SERVICEBELL_DISPATCH_INTERVAL_SECONDS", gt=0
    )
    dispatch_enabled: bool = Field(default=True, validation_alias="SERVICEBELL_DISPATCH_ENABLED")
    push_timeout_seconds: float = Field(
        default=10.0, validation_alias="SERVICEBELL_PUSH_TIMEOUT_SECONDS", gt=0, le=120
    )
    push_ttl_seconds: int = Field(
        default=86400, validation_alias="SERVICEBELL_PUSH_TTL_SECONDS", ge=0
    )

    # Device sync
    sync_batch_size: int = Field(default=10, validation_alias="SERVICEBELL_SYNC_BATCH_SIZE", ge=1, le=100)
    heartbeat_interval_seconds: int = Field(
        default=30, validation_alias="SERVICEBELL_HEARTBEAT_INTERVAL_SECONDS", ge=5, le=3600
    )

    # Maintenance windows
    ack_retention_days: int = Field(default=30, validation_alias="SERVICEBELL_ACK_RETENTION_DAYS", ge=1)
    subscription_inactive_days: int = Field(
        default=7, validation_alias="SERVICEBELL_SUBSCRIPTION_INACTIVE_DAYS", ge=1
    )
    intent_retention_days: int = Field(
        default=30, validation_alias="SERVICEBELL_INTENT_RETENTION_DAYS", ge=1
    )
    claim_timeout_seconds: int = Field(
        default=300, validation_alias="SERVICEBELL_CLAIM_TIMEOUT_SECONDS", ge=10
    )

    cors_origins: str = Field(
        default="http://localhost:3000,http://127.0.0.1:3000",
        validation_alias="SERVICEBELL_CORS_ORIGINS",
    )

    # Rate limiting storage backend
    # "memory://" is in-process only; use "redis://host:6379" for multiple workers
    rate_limit_storage_uri: str = Field(
        default="memory://",
        validation_alias="RATE_LIMIT_STORAGE_URI",
        description="Storage backend URI for rate limiting counters"
    )

    class Config:
        env_file = ".env"
        extra = "ignore"

    @field_validator("jwt_secret_key")
    @classmethod
    def validate_jwt_secret_key(cls, v: str) -> str:
        """Validate that JWT secret key is sufficiently long."""
        if v and len(v) < 32:
            raise ValueError("JWT_SECRET_KEY must be at least 32 characters")
        return v

    @property
    def is_production(self) -> bool:
        return self.env.lower() == "production"

    @property
    def jwt_configured(self) -> bool:
        """Check if access token verification is configured."""
        return bool(self.jwt_secret_key)

    @property
    def vapid_configured(self) -> bool:
        """Check if VAPID keys are properly configured for Web Push."""
        return bool(self.vapid_public_key and self.vapid_private_key and self.vapid_subject)

    @property
    def vapid_claims(self) -> Dict[str, str]:
        return {"sub": self.vapid_subject} if self.vapid_subject else {}

    @property
    def cron_configured(self) -> bool:
        return bool(self.cron_secret)

    @property
    def cors_origin_list(self) -> List[str]:
        """Allowed CORS origins as a list."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


@lru_cache()
def get_settings() -> AppSettings:
    """
    Get cached application settings instance.

    Returns:
        AppSettings: Configured application settings from environment
    """
    return AppSettings()
