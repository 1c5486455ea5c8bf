"""Configuration for the webhook delivery service.

All configuration is loaded from environment variables with sensible defaults.
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = [
    "DEFAULT_MAX_PAYLOAD_SIZE",
    "MAX_TIMEOUT_SECONDS",
    "CourierConfig",
]

# 10 MiB
DEFAULT_MAX_PAYLOAD_SIZE = 10 * 1024 * 1024

# Upper bound for a subscription's per-request timeout
MAX_TIMEOUT_SECONDS = 300


class CourierConfig(BaseSettings):
    """Webhook delivery configuration.

    Environment Variables:
        COURIER_DATABASE_PATH: SQLite database file (default: ~/.courier/webhooks.db)
        COURIER_STORAGE: Storage backend, "sqlite" or "memory" (default: sqlite)
        COURIER_API_KEYS: Accepted API keys as a JSON list (empty accepts any key)
        COURIER_CONCURRENCY: Number of delivery workers (default: 5)
        COURIER_BATCH_SIZE: Max deliveries claimed per poll (default: 10)
        COURIER_POLL_INTERVAL: Seconds between polls for pending deliveries (default: 5)
        COURIER_RETRY_INTERVAL: Seconds between retry cycles (default: 30)
        COURIER_DEAD_LETTER_THRESHOLD: Age in seconds before a failing delivery
            is abandoned (default: 86400)
        COURIER_CLEANUP_INTERVAL: Seconds between cleanup sweeps (default: 3600)
        COURIER_ENABLE_HEALTH_CHECKS: Run the health check loop (default: true)
        COURIER_ENABLE_CLEANUP: Run the cleanup loop (default: true)
        COURIER_SIGNATURE_TOLERANCE: Max signature timestamp skew in seconds (default: 300)
        COURIER_MAX_PAYLOAD_SIZE: Max event payload bytes (default: 10 MiB)
        COURIER_ALLOW_LOCALHOST: Allow localhost URLs (default: false)
        COURIER_REQUIRE_HTTPS: Reject plain HTTP target URLs (default: false)
        COURIER_RESOLVE_DNS: Resolve target hostnames before accepting them
            (default: true)
        COURIER_ALERT_COOLDOWN: Seconds before a webhook alert repeats (default: 900)
        COURIER_CLAIM_LEASE_SECONDS: Seconds a claimed delivery stays reserved,
            must exceed the 300 second maximum timeout (default: 600)

    Example:
        >>> config = CourierConfig()
        >>> config.concurrency
        5
        >>> config = CourierConfig(storage="memory", poll_interval=1.0)
    """

    model_config = SettingsConfigDict(
        env_prefix="COURIER_",
        env_file=".env",
        extra="ignore",
    )

    # Server
    host: str = Field(
        default="0.0.0.0",
        description="Server host",
    )
    port: int = Field(
        default=8000,
        description="Server port",
        ge=1,
        le=65535,
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level for the service",
    )
    api_keys: list[str] = Field(
        default_factory=list,
        description="Accepted API keys (empty list accepts any key, development only)",
    )

    # Storage
    storage: Literal["sqlite", "memory"] = Field(
        default="sqlite",
        description="Storage backend for webhooks, events and deliveries",
    )
    database_path: str = Field(
        default="~/.courier/webhooks.db",
        description="SQLite database path (':memory:' for a private in-memory database)",
    )

    # Worker pool
    concurrency: int = Field(
        default=5,
        description="Number of logical delivery workers",
        ge=1,
        le=100,
    )
    batch_size: int = Field(
        default=10,
        description="Maximum deliveries claimed per poll cycle",
        ge=1,
        le=1000,
    )
    poll_interval: float = Field(
        default=5.0,
        description="Seconds between polls for pending deliveries",
        gt=0,
    )
    retry_interval: float = Field(
        default=30.0,
        description="Seconds between retry cycles",
        gt=0,
    )
    cleanup_interval: float = Field(
        default=3600.0,
        description="Seconds between cleanup and dead-letter sweeps",
        gt=0,
    )
    health_check_interval: float = Field(
        default=60.0,
        description="Seconds between health checks",
        gt=0,
    )
    enable_health_checks: bool = Field(
        default=True,
        description="Run the periodic health check loop",
    )
    enable_cleanup: bool = Field(
        default=True,
        description="Run the periodic cleanup loop",
    )
    health_failure_threshold: int = Field(
        default=50,
        description="Failed attempts per hour above which a health alert is raised",
        ge=1,
    )

    # Per-webhook monitoring
    alert_success_rate_threshold: float = Field(
        default=95.0,
        description="Success rate percentage below which a webhook is alerted on",
        ge=0,
        le=100,
    )
    alert_response_time_ms: float = Field(
        default=5000.0,
        description="Average response time above which a webhook is alerted on",
        gt=0,
    )
    alert_consecutive_failures: int = Field(
        default=5,
        description="Consecutive failed deliveries that raise an alert",
        ge=1,
    )
    alert_cooldown: float = Field(
        default=900.0,
        description="Seconds before the same alert is sent again for a webhook",
        ge=0,
    )

    shutdown_timeout: float = Field(
        default=30.0,
        description="Seconds to wait for busy workers on shutdown",
        ge=0,
    )
    claim_lease_seconds: int = Field(
        default=600,
        description="Seconds a claimed delivery stays reserved for its worker",
        ge=1,
    )

    # Retention
    dead_letter_threshold: int = Field(
        default=86400,
        description="Age in seconds after which failing deliveries are abandoned",
        ge=60,
    )
    delivered_retention: int = Field(
        default=7 * 86400,
        description="Seconds delivered deliveries are kept before purge",
        ge=60,
    )
    log_retention: int = Field(
        default=30 * 86400,
        description="Seconds delivery logs are kept before purge",
        ge=60,
    )
    event_retention: int = Field(
        default=30 * 86400,
        description="Seconds unreferenced events are kept before purge",
        ge=60,
    )

    # Delivery policy defaults
    default_timeout: int = Field(
        default=30,
        description="Default HTTP timeout for new subscriptions in seconds",
        ge=1,
        le=300,
    )
    default_max_attempts: int = Field(
        default=5,
        description="Default maximum attempts for new subscriptions",
        ge=1,
        le=10,
    )
    retry_base_delay: float = Field(
        default=1.0,
        description="Base delay in seconds for exponential backoff",
        ge=0,
    )
    retry_batch_size: int = Field(
        default=5,
        description="Deliveries processed concurrently by a manual retry",
        ge=1,
        le=50,
    )
    max_response_size: int = Field(
        default=1024,
        description="Response body bytes kept on delivery records",
        ge=0,
    )

    # Security
    signature_tolerance: int = Field(
        default=300,
        description="Maximum signature timestamp skew in seconds for replay protection",
        ge=1,
    )
    max_payload_size: int = Field(
        default=DEFAULT_MAX_PAYLOAD_SIZE,
        description="Maximum event payload size in bytes",
        ge=1024,
    )
    require_https: bool = Field(
        default=False,
        description="Reject plain HTTP target URLs",
    )
    allow_localhost: bool = Field(
        default=False,
        description="Allow localhost URLs (development only)",
    )
    resolve_dns: bool = Field(
        default=True,
        description="Resolve target hostnames and check every resolved address",
    )

    # Event publisher
    publisher_batch_size: int = Field(
        default=10,
        description="Buffered events that trigger an immediate flush",
        ge=1,
    )
    publisher_flush_interval: float = Field(
        default=5.0,
        description="Seconds between buffered event flushes",
        gt=0,
    )
    publisher_retry_attempts: int = Field(
        default=3,
        description="Times a buffered event is re-queued before it is dropped",
        ge=0,
    )
    channel_size: int = Field(
        default=1000,
        description="Capacity of the publisher to worker notification channel",
        ge=1,
    )

    # Observability
    metrics_enabled: bool = Field(
        default=True,
        description="Collect Prometheus metrics and expose /metrics",
    )

    @field_validator("claim_lease_seconds")
    @classmethod
    def validate_claim_lease(cls, v: int) -> int:
        """Validate a lease outlives the slowest permitted delivery attempt."""
        if v <= MAX_TIMEOUT_SECONDS:
            raise ValueError(
                f"claim_lease_seconds must exceed the maximum delivery timeout "
                f"of {MAX_TIMEOUT_SECONDS} seconds"
            )
        return v
