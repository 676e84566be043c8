"""Refresh configuration loaded from environment variables."""

from pydantic import Field
from pydantic_settings import BaseSettings


class RefreshConfig(BaseSettings):
    """Refresh configuration loaded from environment variables.

    Every field can be set with a STUDIO_REFRESH_ prefixed variable.
    For local development, create a .env file in the project root.
    """

    # Booking site (browser-only, no API exists)
    reserve_url: str = Field(
        default="https://m.feelcycle.com/reserve",
        description="Reservation page listing studios and their schedules",
    )
    site_timezone: str = Field(
        default="Asia/Tokyo",
        description="Timezone the booking site shows lesson times in",
    )
    user_agent: str = Field(
        default=(
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
        ),
        description="User agent for the Playwright browser context",
    )
    headless: bool = Field(default=True, description="Launch Chromium headless")

    # Storage
    database_path: str = Field(
        default="data/studio_refresh.db",
        description="SQLite database holding batches, tasks and lessons",
    )
    store_busy_timeout_s: float = Field(
        default=30.0,
        ge=0.0,
        description="How long a store call waits on a locked database",
    )
    locations_file: str | None = Field(
        default=None,
        description="JSON file of studios; scraped from the site when unset",
    )

    # Batch shape
    horizon_days: int = Field(default=14, ge=1, description="Days per batch")
    task_ttl_days: int = Field(default=7, ge=1)
    lesson_ttl_days: int = Field(default=7, ge=1)
    max_failed_attempts: int = Field(
        default=3,
        ge=1,
        description="Claims allowed before reset-failed stops re-queuing a task",
    )

    # Scraping
    navigation_timeout_ms: int = Field(default=60000, ge=1000)
    render_timeout_ms: int = Field(default=30000, ge=1000)
    parse_timeout_s: float = Field(default=30.0, gt=0.0)
    scrape_max_attempts: int = Field(default=3, ge=1)
    scrape_retry_wait_s: float = Field(default=5.0, ge=0.0)
    placeholder_available_slots: int = Field(
        default=5,
        ge=1,
        description="Seats assumed for an available slot without a status text",
    )
    nominal_total_slots: int = Field(default=20, ge=1)

    # Continuation
    stale_after_minutes: int = Field(
        default=15,
        ge=1,
        description="Processing tasks older than this are returned to pending",
    )
    invocation_budget_s: float = Field(
        default=840.0,
        gt=0.0,
        description="Wall-clock budget of one driver invocation",
    )
    budget_safety_margin_s: float = Field(
        default=120.0,
        ge=0.0,
        description="Stop claiming when less than this remains in the budget",
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
        "env_prefix": "STUDIO_REFRESH_",
        "case_sensitive": False,
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


_config: RefreshConfig | None = None


def get_config() -> RefreshConfig:
    """Get the refresh configuration singleton.

    Only the CLI entry point calls this; components take the config
    through their constructors.

    Returns:
        RefreshConfig: Refresh configuration instance
    """
    global _config
    if _config is None:
        _config = RefreshConfig()
    return _config
