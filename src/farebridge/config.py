from __future__ import annotations

import logging
import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


@dataclass(frozen=True)
class EngineSettings:
    environment: str = "development"
    booking_api_url: str = "https://api.duffel.com"
    booking_api_key: str = ""
    booking_api_version: str = "v2"
    provider_timeout_seconds: float = 15.0
    booking_webhook_secret: str = ""
    webhook_accept_unverified: bool = False
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    create_placeholder_orders: bool = True
    system_user_email: str = "system@farebridge.local"
    poll_max_attempts: int = 15
    worker_concurrency: int = 4
    run_workers: bool = True
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def accept_unverified_webhooks(self) -> bool:
        """The unverified escape hatch never applies in production."""
        return self.webhook_accept_unverified and not self.is_production

    @classmethod
    def from_env(cls) -> EngineSettings:
        return cls(
            environment=os.getenv("FAREBRIDGE_ENV", "development").strip().lower(),
            booking_api_url=os.getenv("DUFFEL_API_URL", "https://api.duffel.com").strip().rstrip("/"),
            booking_api_key=os.getenv("DUFFEL_API_KEY", "").strip(),
            booking_api_version=os.getenv("DUFFEL_VERSION", "v2").strip(),
            provider_timeout_seconds=_env_float("FAREBRIDGE_PROVIDER_TIMEOUT_SECONDS", 15.0),
            booking_webhook_secret=os.getenv("DUFFEL_WEBHOOK_SECRET", "").strip(),
            webhook_accept_unverified=_env_bool("DUFFEL_WEBHOOK_DEV_ACCEPT_UNVERIFIED", False),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", "").strip(),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", "").strip(),
            create_placeholder_orders=_env_bool("FAREBRIDGE_CREATE_PLACEHOLDER_ORDERS", True),
            system_user_email=os.getenv("FAREBRIDGE_SYSTEM_USER_EMAIL", "system@farebridge.local").strip(),
            poll_max_attempts=_env_int("FAREBRIDGE_POLL_MAX_ATTEMPTS", 15),
            worker_concurrency=_env_int("FAREBRIDGE_WORKER_CONCURRENCY", 4),
            run_workers=_env_bool("FAREBRIDGE_RUN_WORKERS", True),
            log_level=os.getenv("FAREBRIDGE_LOG_LEVEL", "INFO").strip().upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
