"""Service configuration loaded from environment variables.

For local development, create a .env file in the project root.
"""

from typing import Literal

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings

from src.timetable.errors import ConfigurationError


class TimetableConfig(BaseSettings):
    """Service configuration loaded from environment variables.

    Settings are loaded from environment variables with sensible defaults.
    """

    # Cache
    cache_ttl_seconds: int | Literal["disabled"] = Field(
        default=15 * 60,
        description="Default schedule cache lifetime; 'disabled' turns caching off",
    )
    cache_path: str = Field(
        default="data/cache.sqlite3",
        description="SQLite file backing the durable cache tier",
    )

    # Browser / fetching
    fetch_timeout_seconds: float = Field(
        default=30,
        description="Timeout for every browser navigation and selector wait",
    )
    max_retries: int = Field(
        default=3,
        description="Attempts per navigation before giving up",
    )
    retry_initial_delay: float = Field(
        default=1,
        description="First backoff delay in seconds, doubled on every retry",
    )
    fetch_schedule_with_browser: bool = Field(
        default=True,
        description="Scrape group schedules with the browser; plain HTTP otherwise",
    )
    fetch_teacher_schedule_with_browser: bool = Field(
        default=True,
        description="Scrape teacher schedules with the browser; plain HTTP otherwise",
    )
    headless: bool = Field(default=True, description="Run Chromium headless")
    stealth_probability: float = Field(
        default=0.5,
        description="Chance to include each optional stealth header",
    )
    settle_delay_min: float = Field(default=0.5)
    settle_delay_max: float = Field(default=2.0)
    debug_html_dump_path: str = Field(
        default="data/debug/schedule.html",
        description="Latest raw schedule page, overwritten on every fetch",
    )

    # Notifications
    worker_pool_size: int = Field(
        default=20,
        description="Concurrent deliveries per fan-out batch",
    )
    digest_interval: int = Field(
        default=60,
        description="Seconds between daily digest ticks",
    )
    timezone: str = Field(
        default="Asia/Yekaterinburg",
        description="Timezone for cron triggers and digest times",
    )

    # Recipients
    recipients_path: str = Field(
        default="data/recipients.json",
        description="JSON backup of the recipient directory",
    )
    recipients_save_interval: int = Field(
        default=600,
        description="Seconds between recipient directory backups",
    )

    # Logging
    log_json: bool = Field(
        default=False,
        description="Output logs in JSON format (for production)",
    )
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    model_config = {
        "env_prefix": "",
        "case_sensitive": False,
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @field_validator("worker_pool_size", "max_retries")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("stealth_probability")
    @classmethod
    def _probability(cls, value: float) -> float:
        if not 0 <= value <= 1:
            raise ValueError("must be between 0 and 1")
        return value

    @property
    def caching_disabled(self) -> bool:
        return self.cache_ttl_seconds == "disabled"

    @property
    def default_ttl(self) -> int:
        """Default cache lifetime in seconds; 0 when caching is disabled."""
        if self.cache_ttl_seconds == "disabled":
            return 0
        return self.cache_ttl_seconds


# Singleton pattern
_config: TimetableConfig | None = None


def get_config() -> TimetableConfig:
    """Get the service configuration singleton.

    Raises:
        ConfigurationError: If the environment holds invalid values.
    """
    global _config
    if _config is None:
        try:
            _config = TimetableConfig()
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e
    return _config
