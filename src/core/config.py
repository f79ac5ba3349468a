"""
Gateway configuration

Settings are plain pydantic models. Each one has a ``from_env`` constructor that
reads the process environment, so tests can build them directly with explicit
values while the entry point builds them from the deployment environment.
"""

import os
from typing import Dict, Optional
from pydantic import BaseModel, Field


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class QuotaDefaults(BaseModel):
    """Budget applied to a principal on first access"""
    requests_per_minute: int = Field(60, gt=0)
    requests_per_hour: int = Field(1000, gt=0)
    requests_per_day: int = Field(10000, gt=0)
    tokens_per_minute: int = Field(10000, gt=0)
    tokens_per_hour: int = Field(100000, gt=0)
    tokens_per_day: int = Field(1000000, gt=0)
    max_concurrent_requests: int = Field(5, gt=0)


class QuotaSettings(BaseModel):
    """Quota ledger configuration"""
    defaults: QuotaDefaults = Field(default_factory=QuotaDefaults)
    enable_soft_limits: bool = True
    soft_limit_threshold: float = Field(0.8, gt=0, le=1)
    history_limit: int = Field(1000, gt=0)

    # Window lengths in milliseconds
    reset_intervals: Dict[str, int] = Field(
        default_factory=lambda: {
            "minute": 60 * 1000,
            "hour": 60 * 60 * 1000,
            "day": 24 * 60 * 60 * 1000,
        }
    )
    stale_concurrency_ms: int = 60 * 1000
    release_slot_on_rejection: bool = False
    sweep_interval_seconds: float = 60.0

    store: str = "memory"
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_db: int = 3

    @classmethod
    def from_env(cls) -> "QuotaSettings":
        defaults = QuotaDefaults(
            requests_per_minute=int(os.getenv("QUOTA_REQUESTS_PER_MINUTE", "60")),
            requests_per_hour=int(os.getenv("QUOTA_REQUESTS_PER_HOUR", "1000")),
            requests_per_day=int(os.getenv("QUOTA_REQUESTS_PER_DAY", "10000")),
            tokens_per_minute=int(os.getenv("QUOTA_TOKENS_PER_MINUTE", "10000")),
            tokens_per_hour=int(os.getenv("QUOTA_TOKENS_PER_HOUR", "100000")),
            tokens_per_day=int(os.getenv("QUOTA_TOKENS_PER_DAY", "1000000")),
            max_concurrent_requests=int(os.getenv("QUOTA_MAX_CONCURRENT", "5")),
        )
        return cls(
            defaults=defaults,
            enable_soft_limits=_env_bool("QUOTA_ENABLE_SOFT_LIMITS", True),
            soft_limit_threshold=float(os.getenv("QUOTA_SOFT_LIMIT_THRESHOLD", "0.8")),
            history_limit=int(os.getenv("QUOTA_HISTORY_LIMIT", "1000")),
            stale_concurrency_ms=int(os.getenv("QUOTA_STALE_CONCURRENCY_MS", "60000")),
            release_slot_on_rejection=_env_bool("QUOTA_RELEASE_SLOT_ON_REJECTION", False),
            sweep_interval_seconds=float(os.getenv("QUOTA_SWEEP_INTERVAL", "60")),
            store=os.getenv("QUOTA_STORE", "memory"),
            redis_host=os.getenv("REDIS_HOST", "localhost"),
            redis_port=int(os.getenv("REDIS_PORT", "6379")),
            redis_password=os.getenv("REDIS_PASSWORD"),
            redis_db=int(os.getenv("QUOTA_REDIS_DB", "3")),
        )


class WebhookSettings(BaseModel):
    """Webhook registry and delivery configuration"""
    max_webhooks_per_principal: int = Field(10, gt=0)
    max_retries: int = Field(3, ge=0, le=10)
    retry_delay_ms: int = Field(5000, ge=0)
    timeout_ms: int = Field(10000, ge=1000, le=60000)
    history_limit: int = Field(100, gt=0)
    history_retention_days: float = Field(7, gt=0)
    prune_interval_seconds: float = 60 * 60.0
    enable_signing: bool = True
    signature_header: str = "X-Webhook-Signature"
    user_agent: str = "AI-API-Playground-Webhook/1.0"

    # 0 disables the cap on in-flight HTTP attempts
    max_parallel_deliveries: int = Field(20, ge=0)
    shutdown_grace_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> "WebhookSettings":
        return cls(
            max_webhooks_per_principal=int(os.getenv("WEBHOOK_MAX_PER_PRINCIPAL", "10")),
            max_retries=int(os.getenv("WEBHOOK_MAX_RETRIES", "3")),
            retry_delay_ms=int(os.getenv("WEBHOOK_RETRY_DELAY_MS", "5000")),
            timeout_ms=int(os.getenv("WEBHOOK_TIMEOUT_MS", "10000")),
            history_limit=int(os.getenv("WEBHOOK_HISTORY_LIMIT", "100")),
            history_retention_days=float(os.getenv("WEBHOOK_HISTORY_RETENTION_DAYS", "7")),
            prune_interval_seconds=float(os.getenv("WEBHOOK_PRUNE_INTERVAL", "3600")),
            enable_signing=_env_bool("WEBHOOK_ENABLE_SIGNING", True),
            user_agent=os.getenv("WEBHOOK_USER_AGENT", "AI-API-Playground-Webhook/1.0"),
            max_parallel_deliveries=int(os.getenv("WEBHOOK_MAX_PARALLEL", "20")),
        )


class GatewaySettings(BaseModel):
    """Top-level process settings"""
    host: str = "0.0.0.0"
    port: int = 8000
    admin_api_key: Optional[str] = None
    log_level: str = "INFO"
    quota: QuotaSettings = Field(default_factory=QuotaSettings)
    webhooks: WebhookSettings = Field(default_factory=WebhookSettings)

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        return cls(
            host=os.getenv("GATEWAY_HOST", "0.0.0.0"),
            port=int(os.getenv("GATEWAY_PORT", "8000")),
            admin_api_key=os.getenv("ADMIN_API_KEY"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            quota=QuotaSettings.from_env(),
            webhooks=WebhookSettings.from_env(),
        )
