"""
Application configuration

SECURITY: Defaults are fail-safe for production.
- DEBUG defaults to False
- DATABASE_URL has no default (will fail if not set)
- SERVICE_TOKEN is required in production (guards the relay trigger surface)

Engine constants default to the values the relay handlers were tuned with.
"""
import os
import logging
from typing import Optional
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    # App - defaults are PRODUCTION safe
    APP_NAME: str = "MailRelay"
    DEBUG: bool = False
    ENVIRONMENT: str = "production"

    # Database - NO DEFAULT (will fail if not set)
    DATABASE_URL: str

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def convert_database_url(cls, v):
        """Convert plain postgres:// URLs to asyncpg format."""
        if not v:
            return v
        if v.startswith("postgres://"):
            v = v.replace("postgres://", "postgresql+asyncpg://", 1)
        elif v.startswith("postgresql://") and "+asyncpg" not in v:
            v = v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    # Shared secret for self-invocation and watchdog triggers
    SERVICE_TOKEN: str = ""

    # Database Pool Configuration
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_RECYCLE: int = 3600  # 1 hour

    # ===== INVOCATION BUDGET =====
    INVOCATION_TIME_BUDGET_SECONDS: float = 60.0
    STOP_BUFFER_SECONDS: float = 10.0  # Stop draining this long before the hard deadline
    PER_CALL_TIMEOUT_SECONDS: float = 30.0
    LOCK_REFRESH_EVERY_SUB_BATCHES: int = 2
    SUB_BATCH_FANOUT: int = 4

    # ===== RELAY / CONTINUATION =====
    CONTINUATION_MODE: str = "inprocess"  # "inprocess" or "http"
    SELF_INVOKE_BASE_URL: str = ""
    MAX_RELAY_DEPTH: int = 100
    MAX_SLEEP_ON_ENTRY_MS: int = 60000
    DEGRADED_RETRY_DELAY_SECONDS: int = 30

    # ===== RESILIENCE =====
    RETRY_MAX_RETRIES: int = 5
    RETRY_BASE_DELAY_SECONDS: float = 2.0
    RETRY_MAX_DELAY_SECONDS: float = 60.0
    RETRY_JITTER_SECONDS: float = 1.0
    MAX_CONSECUTIVE_FAILURES: int = 10
    MAX_ITEM_ATTEMPTS: int = 3

    # ===== WATCHDOG =====
    WATCHDOG_ENABLED: bool = True
    WATCHDOG_INTERVAL_MINUTES: int = 2
    LOCK_STALE_MINUTES: int = 3
    HEARTBEAT_STALE_MINUTES: int = 8
    WATCHDOG_MAX_RESTARTS: int = 3
    PAUSED_RESUME_AFTER_SECONDS: int = 30

    # ===== PROVIDERS =====
    # Mailbox provider (message list + message fetch)
    MAIL_API_BASE: str = "https://api.aurinko.io/v1"
    MAIL_API_TOKEN: str = ""

    # Language model used for classification and FAQ extraction
    LLM_API_BASE: str = "https://api.openai.com/v1"
    LLM_API_KEY: str = ""
    LLM_MODEL: str = "gpt-4o-mini"

    # Hosted crawler for competitor sites
    CRAWLER_API_BASE: str = "https://api.apify.com/v2"
    CRAWLER_API_TOKEN: str = ""
    CRAWLER_ACTOR_ID: str = "apify~website-content-crawler"
    CRAWLER_MAX_PAGES_PER_SITE: int = 5

    # Stage page / sub-batch sizes
    IMPORT_PAGE_SIZE: int = 50
    IMPORT_MAX_PER_FOLDER: int = 1000  # Newest N messages per folder
    HYDRATE_PAGE_SIZE: int = 30
    HYDRATE_SUB_BATCH_SIZE: int = 6
    CLASSIFY_PAGE_SIZE: int = 500
    CLASSIFY_SUB_BATCH_SIZE: int = 100
    SCRAPE_PAGE_SIZE: int = 50
    SCRAPE_SUB_BATCH_SIZE: int = 10

    @field_validator("SUB_BATCH_FANOUT")
    @classmethod
    def clamp_fanout(cls, v):
        """Keep fan-out in the range downstream providers tolerate."""
        return max(1, min(int(v), 8))

    @property
    def effective_budget_seconds(self) -> float:
        return max(0.0, self.INVOCATION_TIME_BUDGET_SECONDS - self.STOP_BUFFER_SECONDS)

    @model_validator(mode="after")
    def validate_production_config(self):
        """Runtime validation to catch insecure production configurations."""
        if self.CONTINUATION_MODE not in ("inprocess", "http"):
            raise ValueError(
                f"CONTINUATION_MODE must be 'inprocess' or 'http', got {self.CONTINUATION_MODE!r}"
            )

        if self.ENVIRONMENT == "production":
            errors = []

            if self.DEBUG:
                errors.append(
                    "DEBUG=True is forbidden in production. "
                    "Set DEBUG=false or ENVIRONMENT=development"
                )

            if not self.SERVICE_TOKEN:
                errors.append(
                    "SERVICE_TOKEN is required in production. "
                    "Generate one: python -c 'import secrets; print(secrets.token_urlsafe(32))'"
                )

            if "localhost" in self.DATABASE_URL or "127.0.0.1" in self.DATABASE_URL:
                errors.append(
                    "Localhost DATABASE_URL detected in production. "
                    "Configure proper database connection."
                )

            if self.CONTINUATION_MODE == "http" and not self.SELF_INVOKE_BASE_URL:
                errors.append(
                    "CONTINUATION_MODE=http requires SELF_INVOKE_BASE_URL."
                )

            if self.STOP_BUFFER_SECONDS >= self.INVOCATION_TIME_BUDGET_SECONDS:
                errors.append(
                    "STOP_BUFFER_SECONDS must be smaller than INVOCATION_TIME_BUDGET_SECONDS."
                )

            if errors:
                raise ValueError(
                    "PRODUCTION CONFIGURATION VIOLATIONS:\n" + "\n".join(f"  - {e}" for e in errors)
                )

        return self

    class Config:
        env_file = ".env"
        case_sensitive = True


# Try to load settings, provide helpful error on failure
try:
    settings = Settings()
except Exception as e:
    # In development, allow fallback defaults
    if os.getenv("ENVIRONMENT", "development") == "development":
        logger.warning(
            f"Settings validation failed ({e}), using development defaults. "
            "Set DATABASE_URL in .env file."
        )
        os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./mailrelay_dev.db")
        os.environ.setdefault("ENVIRONMENT", "development")
        settings = Settings()
    else:
        raise


def resolve_settings(override: Optional[Settings] = None) -> Settings:
    """Components accept an injected Settings for tests; fall back to the global."""
    return override or settings
