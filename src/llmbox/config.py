"""Service settings read from the environment (and an optional ``.env``).

``get_settings()`` parses them once per process.  ``validate_credentials()``
runs at startup: missing API keys stop a production process and only warn in
development.

``llmbox.resilience.retry`` is imported lazily inside ``Settings.retry_policy``
so every module can import this one.
"""

from __future__ import annotations

import sys
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING

import structlog
from pydantic import SecretStr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from llmbox.resilience.retry import RetryPolicy

logger = structlog.get_logger()


class Settings(BaseSettings):
    """Every tunable of the webhook service.

    Field names map to upper-case environment variables.  API keys are
    ``SecretStr`` so they never render in logs or reprs.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # -- General ---------------------------------------------------------------
    production: bool = False
    webhook_port: int = 8000
    log_level: str = "INFO"
    sentry_dsn: str = ""
    database_path: Path = Path("data/llmbox.db")
    service_email_address: str = ""
    web_app_url: str = "https://llmbox.ai"

    # -- Completion (Anthropic) ------------------------------------------------
    anthropic_api_key: SecretStr = SecretStr("")
    completion_model: str = "claude-sonnet-4-5-20250929"
    completion_max_tokens: int = 2000
    completion_timeout_seconds: float = 30.0
    completion_deadline_seconds: float = 90.0

    # -- Delivery (SendGrid) ---------------------------------------------------
    sendgrid_api_key: SecretStr = SecretStr("")
    sendgrid_base_url: str = "https://api.sendgrid.com"
    delivery_timeout_seconds: float = 10.0
    delivery_deadline_seconds: float = 30.0

    # -- Retry policy ----------------------------------------------------------
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_backoff_multiplier: float = 2.0

    # -- Idempotency -----------------------------------------------------------
    idempotency_window_seconds: int = 600
    idempotency_gc_interval_seconds: int = 300

    # -- Usage ledger ----------------------------------------------------------
    free_tier_cost_limit_usd: Decimal = Decimal("1.00")
    quota_overshoot_tolerance_usd: Decimal = Decimal("0.05")
    quota_warning_ratio: float = 0.8
    # Pending reservations older than this are swept back into the quota.
    reservation_stale_seconds: int = 900

    # -- Performance thresholds (milliseconds) ---------------------------------
    parsing_threshold_ms: int = 2000
    completion_threshold_ms: int = 20000
    delivery_threshold_ms: int = 5000
    total_budget_ms: int = 25000

    def retry_policy(self, attempt_timeout: float | None = None) -> RetryPolicy:
        """Build the shared ``RetryPolicy`` with an optional per-attempt timeout."""
        from llmbox.resilience.retry import RetryPolicy

        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay_seconds,
            backoff_multiplier=self.retry_backoff_multiplier,
            attempt_timeout=attempt_timeout,
        )

    def stage_thresholds(self) -> dict[str, int]:
        """Per-stage slow-operation thresholds keyed by performance label."""
        return {
            "webhook_parsing": self.parsing_threshold_ms,
            "completion_call": self.completion_threshold_ms,
            "email_send": self.delivery_threshold_ms,
        }


@lru_cache
def get_settings() -> Settings:
    """Parse settings once per process.  Tests reset with ``get_settings.cache_clear()``."""
    try:
        return Settings()
    except ValidationError as exc:
        # exc.errors() carries field locations only, never SecretStr values.
        logger.error("settings_validation_failed", errors=exc.errors())
        sys.exit(1)


def missing_credentials(settings: Settings) -> list[str]:
    """Environment variable names of required credentials that are unset."""
    required = {
        "ANTHROPIC_API_KEY": settings.anthropic_api_key.get_secret_value(),
        "SENDGRID_API_KEY": settings.sendgrid_api_key.get_secret_value(),
        "SERVICE_EMAIL_ADDRESS": settings.service_email_address,
    }
    return [name for name, value in required.items() if not value.strip()]


def validate_credentials(settings: Settings) -> None:
    """Startup gate for the completion and delivery credentials.

    Production processes exit with status 1 when anything is missing, after
    printing the list to stderr.  Development processes log one warning per
    missing credential and carry on.
    """
    missing = missing_credentials(settings)
    if not missing:
        logger.info("credential_validation_passed")
        return

    if not settings.production:
        for name in missing:
            logger.warning("credential_missing_dev", credential=name)
        return

    for name in missing:
        logger.error("credential_missing", credential=name)
    lines = "\n".join(f"  - {name} is empty or not set" for name in missing)
    print(f"\nLLMBox cannot start in production mode:\n{lines}\n", file=sys.stderr)
    sys.exit(1)
