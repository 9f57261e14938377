"""Application configuration.

Configuration is loaded from environment variables using pydantic-settings.
Google credentials are never stored here; point `GOOGLE_TOKEN_FILE` at an
authorized-user JSON file produced by any OAuth tool.

## Common Environment Variables

- DATABASE_URL: SQLAlchemy async URL (default: local SQLite file)
- CALENDAR_IDS: JSON list of calendars to sync, e.g. `["primary"]`
- WINDOW_DAYS: Days covered by each snapshot (default: 7)
- DISPLAY_TIMEZONE: IANA zone used for "today" (default: UTC)
- RETENTION_DAYS: Days tombstones and ended events are kept (default: 30)

## Example .env file

```
DATABASE_URL=sqlite+aiosqlite:///agenda_sync.db
CALENDAR_IDS=["primary", "team@example.com"]
DISPLAY_TIMEZONE=Europe/Berlin
GOOGLE_TOKEN_FILE=~/.config/agenda-sync/token.json
```
"""

from __future__ import annotations

from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Agenda Sync"
    app_version: str = "0.1.0"
    debug: bool = False

    # Server
    host: str = "127.0.0.1"
    port: int = 8000
    allowed_origins: list[str] = Field(
        default=["http://localhost:3000"],
        description="CORS allowed origins for dashboards reading snapshots",
    )

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///agenda_sync.db",
        description="SQLAlchemy async connection string",
    )
    database_pool_size: int = Field(default=5, ge=1, le=50)
    database_max_overflow: int = Field(default=10, ge=0, le=50)
    database_echo: bool = False  # Log SQL queries

    # Calendars and viewing window
    calendar_ids: list[str] = Field(
        default=["primary"],
        description="Calendars synchronized on every pull cycle",
    )
    window_days: int = Field(default=7, ge=1, le=366)
    display_timezone: str = "UTC"
    poll_interval_minutes: int = Field(default=5, ge=1, le=1440)
    retention_days: int = Field(default=30, ge=0)

    # Fetching
    fetch_timeout_seconds: float = Field(default=30.0, gt=0)
    full_sync_lookback_days: int | None = Field(
        default=30,
        description="Bound full syncs to events ending after now - N days (None: unbounded)",
    )
    page_size: int = Field(default=250, ge=1, le=2500)

    # Retry policy for transient failures
    max_attempts: int = Field(default=4, ge=1, le=20)
    backoff_multiplier: float = Field(default=1.0, ge=0)
    backoff_min_seconds: float = Field(default=2.0, ge=0)
    backoff_max_seconds: float = Field(default=60.0, ge=0)

    # Recurrence expansion
    max_occurrences_per_rule: int = Field(default=1000, ge=1)

    # Google Calendar API
    google_token_file: str = "~/.config/agenda-sync/token.json"
    google_calendar_scopes: list[str] = Field(
        default=["https://www.googleapis.com/auth/calendar.readonly"],
        description="Google Calendar API scopes",
    )
    skip_declined: bool = True
    event_types: list[str] = Field(
        default=["default"],
        description="Google event types kept (workingLocation, focusTime, ... are dropped)",
    )

    # Classification of remote status codes; anything else is fatal
    token_invalid_status_codes: list[int] = Field(default=[410])
    transient_status_codes: list[int] = Field(default=[429, 500, 502, 503, 504])

    @field_validator("database_url", mode="before")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Ensure PostgreSQL URLs use the asyncpg driver."""
        if v.startswith("postgresql://"):
            return v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    @field_validator("display_timezone")
    @classmethod
    def validate_display_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown time zone: {v}") from e
        return v

    @model_validator(mode="after")
    def check_backoff_bounds(self) -> Settings:
        if self.backoff_max_seconds < self.backoff_min_seconds:
            raise ValueError("backoff_max_seconds must be >= backoff_min_seconds")
        return self

    @property
    def display_zone(self) -> ZoneInfo:
        return ZoneInfo(self.display_timezone)


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Settings are loaded once and cached. To reload, clear the cache:
    ```python
    get_settings.cache_clear()
    ```
    """
    return Settings()
