from pathlib import Path

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables and .env file.

    Portal timing values (booking window, open time, timezone) describe the
    scheduling portal's rules, not this service's; change them only when the
    portal changes its advance-booking policy.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Master key used to encrypt stored portal credentials
    courtbook_master_key: str | None = None

    # Portal
    portal_base_url: str = "https://jct.gametime.net"
    portal_sport_id: int = 1
    portal_timezone: str = "America/New_York"

    # Booking window: slots for date D open at (D - window_days) at open_time
    booking_window_days: int = 6
    booking_window_open_time: str = "08:00"
    max_advance_days: int = 90

    # Recurrence
    recurrence_max_instances: int = 52
    monthly_stride_days: int = 30

    # Scheduler
    scheduler_enabled: bool = True
    scheduler_interval_seconds: float = 60.0
    scheduler_max_workers: int = 2
    request_timeout_seconds: float = 30.0
    clock_sync_interval_seconds: float = 600.0

    # Retry policy
    max_retries: int = 3
    retry_base_delay_seconds: float = 30.0
    retry_max_delay_seconds: float = 600.0

    # Challenge token (reCAPTCHA v3 on the booking form)
    challenge_site_key: str = "6LeW9NsUAAAAAC9KRF2JvdLtGMSds7hrBdxuOnLH"
    challenge_action: str = "homepage"
    challenge_token_ttl_seconds: float = 3.0
    challenge_timeout_seconds: float = 20.0
    challenge_headless: bool = True

    # Submission payload
    slot_granularity_minutes: int = 30
    guest_name: str = "Guest Player"

    # MCP transport
    mcp_transport: str = "stdio"
    mcp_host: str = "127.0.0.1"
    mcp_port: int = 8000

    # Paths & logging
    data_dir: Path = Path(__file__).resolve().parent.parent / "data"
    log_level: str = "INFO"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def db_path(self) -> Path:
        return self.data_dir / "courtbook.db"


_settings: Settings | None = None


def get_settings() -> Settings:
    """Return the cached Settings singleton. Created on first call."""
    global _settings  # noqa: PLW0603
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached settings. Used in tests."""
    global _settings  # noqa: PLW0603
    _settings = None
