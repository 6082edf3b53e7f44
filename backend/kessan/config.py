"""Configuration settings for the disclosure pipeline."""
import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent
ROOT_DIR = BASE_DIR.parent.parent

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Pipeline settings."""

    model_config = SettingsConfigDict(
        env_file=str((ROOT_DIR / ".env").resolve()),
        case_sensitive=False,
    )

    # Supabase configuration
    supabase_url: str = os.getenv("SUPABASE_URL", "")
    supabase_service_role_key: str = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
    pdf_bucket: str = os.getenv("PDF_BUCKET", "earnings-pdfs")

    # Gemini AI configuration
    gemini_api_key: str = os.getenv("GEMINI_API_KEY", "")
    gemini_model: str = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
    gemini_classifier_model: str = os.getenv("GEMINI_CLASSIFIER_MODEL", "gemini-2.5-flash")
    gemini_request_timeout: int = Field(
        default=180,
        ge=10,
        le=600,
        description="Seconds allowed for a single generateContent call"
    )

    # Gemini retry configuration
    gemini_max_retries: int = Field(
        default=2,
        ge=1,
        le=10,
        description="Maximum retry attempts for rate-limited Gemini requests"
    )
    gemini_initial_wait: int = Field(
        default=1,
        ge=1,
        le=10,
        description="Initial wait time in seconds before first retry"
    )
    gemini_max_wait: int = Field(
        default=60,
        ge=10,
        le=300,
        description="Maximum wait time in seconds between retries"
    )

    # Redis configuration (defaults to localhost)
    redis_url: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    # Pipeline tunables
    parallel_limit: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Concurrent model calls shared by classification, customization and regeneration"
    )
    classify_batch_size: int = Field(default=10, ge=1, le=100)
    max_pdf_pages: int = Field(default=100, ge=1)
    max_pdf_bytes: int = Field(default=5 * 1024 * 1024, ge=1024)
    max_pdfs_per_analysis: int = Field(default=2, ge=1, le=4)
    import_batch_size: int = Field(
        default=20,
        ge=1,
        le=200,
        description="Candidates processed per historical import invocation"
    )

    # Disclosure sources
    tdnet_base_url: str = os.getenv("TDNET_BASE_URL", "https://webapi.yanoshin.jp/webapi/tdnet/list")
    tdnet_recent_limit: int = Field(default=300, ge=1, le=1000)
    tdnet_ticker_limit: int = Field(default=100, ge=1, le=1000)
    irbank_base_url: str = os.getenv("IRBANK_BASE_URL", "https://irbank.net")
    irbank_limit: int = Field(default=100, ge=1, le=500)
    irbank_request_delay: float = Field(default=0.1, ge=0)
    http_timeout: float = Field(default=30.0, gt=0)
    http_user_agent: str = os.getenv("HTTP_USER_AGENT", DEFAULT_USER_AGENT)

    # Scheduling and notifications
    poll_interval_minutes: int = Field(default=15, ge=1, le=1440)
    notification_webhook_url: Optional[str] = os.getenv("NOTIFICATION_WEBHOOK_URL") or None

    log_level: str = os.getenv("LOG_LEVEL", "INFO")


def _fetch_secret_from_supabase(settings: Settings, secret_key: str) -> Optional[str]:
    """Load a secret from Supabase config table using the service role key."""
    if not settings.supabase_url or not settings.supabase_service_role_key:
        return None

    try:
        from supabase import create_client

        client = create_client(settings.supabase_url, settings.supabase_service_role_key)
        response = (
            client.table("app_config")
            .select("value")
            .eq("key", secret_key)
            .single()
            .execute()
        )
        if response.data:
            return response.data.get("value")
    except Exception as exc:
        logger.warning("Unable to fetch %s from Supabase: %s", secret_key, exc)
    return None


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    settings = Settings()

    if not settings.gemini_api_key:
        secret = _fetch_secret_from_supabase(settings, "GEMINI_API_KEY")
        if secret:
            settings.gemini_api_key = secret

    return settings
