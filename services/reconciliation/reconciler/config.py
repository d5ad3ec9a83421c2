"""
Reconciliation Service — configuration

All configuration comes from environment variables and is read once,
when the FastAPI lifespan starts. Tests build a Settings directly.
"""

import logging
import os
from dataclasses import dataclass


def _flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str
    redis_url: str = "redis://localhost:6379"

    # Shared secrets
    stripe_webhook_secret: str | None = None
    carrier_webhook_secret: str | None = None
    internal_api_secret: str | None = None

    # Outbound collaborators
    email_service_url: str | None = None
    email_api_key: str | None = None
    email_from: str = "orders@localhost"
    label_service_url: str | None = None
    label_public_key: str | None = None
    label_secret_key: str | None = None

    # Timeouts / staleness windows
    http_timeout_seconds: float = 10.0
    notify_timeout_seconds: float = 15.0
    settings_cache_ttl_seconds: float = 60.0
    correlation_memo_ttl_seconds: int = 7 * 24 * 3600

    email_fallback_enabled: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.environ["DATABASE_URL"],
            redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379"),
            stripe_webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET"),
            carrier_webhook_secret=os.environ.get("CARRIER_WEBHOOK_SECRET"),
            internal_api_secret=os.environ.get("INTERNAL_API_SECRET"),
            email_service_url=os.environ.get("EMAIL_SERVICE_URL"),
            email_api_key=os.environ.get("EMAIL_API_KEY"),
            email_from=os.environ.get("EMAIL_FROM", "orders@localhost"),
            label_service_url=os.environ.get("LABEL_SERVICE_URL"),
            label_public_key=os.environ.get("LABEL_PUBLIC_KEY"),
            label_secret_key=os.environ.get("LABEL_SECRET_KEY"),
            http_timeout_seconds=float(os.environ.get("HTTP_TIMEOUT_SECONDS", "10")),
            notify_timeout_seconds=float(os.environ.get("NOTIFY_TIMEOUT_SECONDS", "15")),
            settings_cache_ttl_seconds=float(
                os.environ.get("SETTINGS_CACHE_TTL_SECONDS", "60")
            ),
            correlation_memo_ttl_seconds=int(
                os.environ.get("CORRELATION_MEMO_TTL_SECONDS", str(7 * 24 * 3600))
            ),
            email_fallback_enabled=_flag("RECONCILER_EMAIL_FALLBACK", True),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )


def configure_logging(level: str = "INFO") -> None:
    """Root logger setup for the service process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
