"""Application configuration via Pydantic Settings."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

# Resolve .env from the project root regardless of CWD
_ENV_FILE = Path(__file__).resolve().parents[3] / ".env"


class Settings(BaseSettings):
    """Central configuration loaded from environment variables / .env file.

    The numeric thresholds are platform defaults. Any of them can be
    overridden per tenant through ``tenant_automation_settings``.
    """

    # Database
    database_url: str = "sqlite+aiosqlite:///./outreach_engine.db"

    # Aircall (SMS / WhatsApp)
    aircall_api_id: str = ""
    aircall_api_token: str = ""
    aircall_number_id: str = ""
    aircall_whatsapp_number_id: str = ""

    # SendGrid (email)
    sendgrid_api_key: str = ""
    email_from: str = ""

    # Log outbound messages instead of sending them
    transport_dry_run: bool = False

    # Internal endpoints (cron, trigger hooks)
    internal_token: str = "change-me-in-production"

    # Review links
    review_link_base_url: str = "http://localhost:8000"

    # Scheduler
    run_scheduler_in_process: bool = False
    scheduler_interval_hours: float = 1.0

    # Safety rules
    rule_cache_ttl_seconds: int = 300

    # Batch operations
    batch_page_size: int = 50

    # Rate limits
    daily_limit: int = 3
    weekly_limit: int = 10
    monthly_limit: int = 30

    # Review requests
    review_negative_threshold: int = 4
    review_max_sequences: int = 3
    review_followup_interval_days: int = 3

    # Lead nurture
    nurture_max_steps: int = 5
    nurture_step_interval_hours: int = 24

    # General
    debug: bool = True

    model_config = {"env_file": str(_ENV_FILE), "env_file_encoding": "utf-8", "extra": "ignore"}


@lru_cache
def get_settings() -> Settings:
    """Return cached Settings instance."""
    return Settings()
