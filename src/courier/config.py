"""Configuration management for Courier."""

import logging
import secrets
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


def _generate_dev_webhook_secret() -> str:
    """Generate a random default webhook secret for development use.

    Outside production a missing default secret is replaced by a random one
    at startup. Receivers of unsigned-subscription traffic cannot verify it
    across restarts, which is acceptable for dev.

    Returns:
        A cryptographically secure random hex string (64 characters).
    """
    return secrets.token_hex(32)


class Settings(BaseSettings):
    """Courier configuration loaded from environment variables.

    All settings can be overridden via environment variables with
    the COURIER_ prefix. For example:
        COURIER_DATABASE_URL=postgresql://localhost/app
        COURIER_WEBHOOK_MAX_RETRIES=5

    Security Notes:
        - In production (COURIER_ENV=production), COURIER_WEBHOOK_SECRET is required
        - In dev/test, a random default secret is generated if none is set
    """

    # Environment
    env: Literal["development", "production", "test"] = Field(
        default="development",
        description="Environment: development, production, or test",
    )

    # Storage
    database_url: str | None = Field(
        default=None,
        description="PostgreSQL DSN for the asyncpg repository",
    )

    # Signing
    webhook_secret: str | None = Field(
        default=None,
        description=(
            "Default HMAC secret used when a subscription carries none. "
            "REQUIRED in production."
        ),
    )

    # Delivery policy
    webhook_max_retries: int = Field(
        default=3,
        ge=1,
        le=50,
        description="Default max delivery attempts when a subscription sets none",
    )
    webhook_retry_backoff_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        le=10.0,
        description="Default backoff multiplier when a subscription sets none",
    )
    webhook_base_backoff_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Base delay multiplied by multiplier**attempts between retries",
    )
    webhook_request_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for a single HTTP delivery attempt",
    )
    webhook_response_body_limit: int = Field(
        default=1024,
        ge=0,
        description=(
            "Bytes of the receiver's response body kept on the row. "
            "Longer bodies are truncated intentionally."
        ),
    )

    # Dispatch
    webhook_batch_size: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Rows claimed per process_pending_events call",
    )
    webhook_max_concurrent: int = Field(
        default=10,
        ge=1,
        le=200,
        description="Maximum concurrent HTTP deliveries within one batch",
    )
    webhook_stuck_minutes: int = Field(
        default=10,
        ge=1,
        description="Minutes a row may stay in 'processing' before it is reclaimed",
    )

    # Emission
    event_source: str = Field(
        default="courier",
        description="Default event_source stamped on emitted events",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format",
    )

    # Runtime-generated dev secret (not from env, generated at startup if needed)
    _runtime_dev_secret: str | None = None

    model_config = {
        "env_prefix": "COURIER_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }

    @model_validator(mode="after")
    def validate_webhook_secret(self) -> "Settings":
        """Require an explicit default secret in production.

        In dev/test a random secret is generated when none is configured.
        """
        if self.env == "production":
            if not self.webhook_secret:
                raise ValueError(
                    "COURIER_WEBHOOK_SECRET must be set in production. "
                    'Generate one with: python -c "import secrets; print(secrets.token_hex(32))"'
                )
        elif not self.webhook_secret:
            object.__setattr__(self, "_runtime_dev_secret", _generate_dev_webhook_secret())
            logger.debug("Generated random default webhook secret for development")
        return self

    @property
    def effective_webhook_secret(self) -> str:
        """Get the default signing secret.

        Returns:
            The configured secret, or the runtime-generated one in dev/test.

        Raises:
            ValueError: If no secret is available (should not happen
                after validation).
        """
        if self.webhook_secret:
            return self.webhook_secret
        if self._runtime_dev_secret is not None:
            return self._runtime_dev_secret
        raise ValueError("No webhook secret available")


# Global settings instance
settings = Settings()
