"""Application configuration via Pydantic Settings."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

# Resolve .env from the project root regardless of CWD
_ENV_FILE = Path(__file__).resolve().parents[3] / ".env"


class Settings(BaseSettings):
    """Central configuration loaded from environment variables / .env file."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./mca_platform.db"

    # AI
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash"
    reasoning_timeout_seconds: float = 30.0
    agent_display_name: str = "Dan Torres"

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""
    delivery_timeout_seconds: float = 15.0

    # Internal endpoints (scheduler, dispatcher)
    internal_api_secret: str = "change-me"

    # Dispatch
    lock_stale_seconds: int = 120
    history_window: int = 20
    business_hours_start: int = 8
    business_hours_end: int = 22

    # Morning follow-up
    followup_history_window: int = 10
    followup_dedup_hours: int = 20
    followup_offer_window_hours: int = 48
    followup_send_interval_seconds: float = 5.0
    followup_batch_limit: int = 50
    followup_schedule_enabled: bool = True
    followup_hour: int = 9
    followup_timezone: str = "America/New_York"

    # General
    debug: bool = True

    model_config = {"env_file": str(_ENV_FILE), "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def twilio_configured(self) -> bool:
        """True when every Twilio credential needed to send is present."""
        return bool(
            self.twilio_account_sid
            and self.twilio_auth_token
            and self.twilio_phone_number
        )


@lru_cache
def get_settings() -> Settings:
    """Return cached Settings instance."""
    return Settings()
