"""Application settings loaded from environment variables and `.env`.

Hey future me - every knob the poll engine reads lives here. Each section is its
own BaseSettings with an env prefix, so `SPOTIFY_DEV_MODE=true` or
`POLL_INTERVAL_SECONDS=45` just work without a nested delimiter dance.

Dev mode mirrors Spotify's "development mode" app quota: fewer calls per window,
longer poll interval, rarer playlist audits. Explicit env values always win over
the dev-mode defaults.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_", env_file=_ENV_FILE, extra="ignore"
    )

    url: str = "sqlite+aiosqlite:///./swapify.db"
    echo: bool = False
    pool_pre_ping: bool = True
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 3600


class SpotifySettings(BaseSettings):
    """Spotify Web API access and call budget."""

    model_config = SettingsConfigDict(
        env_prefix="SPOTIFY_", env_file=_ENV_FILE, extra="ignore"
    )

    dev_mode: bool = False
    api_base_url: str = "https://api.spotify.com/v1"
    timeout_seconds: float = 30.0
    budget_window_seconds: float = 30.0
    # None = derive from dev_mode (50 in dev mode, 300 otherwise)
    api_call_budget: int | None = None
    budget_max_wait_seconds: float = 10.0

    @property
    def effective_call_budget(self) -> int:
        """Max calls per rolling window."""
        if self.api_call_budget is not None:
            return self.api_call_budget
        return 50 if self.dev_mode else 300


class PollSettings(BaseSettings):
    """Reconciliation loop settings."""

    model_config = SettingsConfigDict(
        env_prefix="POLL_", env_file=_ENV_FILE, extra="ignore"
    )

    enabled: bool = True
    # None = derive from spotify dev mode (60s dev, 30s prod)
    interval_seconds: float | None = None
    secret: str | None = None
    # None = derive from spotify dev mode (every 6 cycles dev, every 2 prod)
    audit_every_n_cycles: int | None = None
    complete_threshold: float = Field(default=0.9, gt=0.0, le=1.0)
    skip_threshold: float = Field(default=0.3, gt=0.0, le=1.0)
    snapshot_stale_after_seconds: float = 1800.0
    max_concurrent_users: int = Field(default=1, ge=1)
    min_inter_user_delay_seconds: float = 0.3
    max_inter_user_delay_seconds: float = 2.0
    remote_removal_alert_after: int = 3
    # Local rows younger than this are not treated as "gone from Spotify" by the sync
    sync_add_grace_seconds: float = 120.0

    @model_validator(mode="after")
    def _check_thresholds(self) -> "PollSettings":
        if self.skip_threshold > self.complete_threshold:
            raise ValueError("POLL_SKIP_THRESHOLD must not exceed POLL_COMPLETE_THRESHOLD")
        if self.min_inter_user_delay_seconds > self.max_inter_user_delay_seconds:
            raise ValueError("min inter-user delay must not exceed the max delay")
        return self


class NotificationSettings(BaseSettings):
    """Outbound notification settings."""

    model_config = SettingsConfigDict(
        env_prefix="NOTIFY_", env_file=_ENV_FILE, extra="ignore"
    )

    webhook_url: str | None = None
    webhook_auth_header: str | None = None
    webhook_timeout_seconds: float = 10.0
    queue_size: int = 500


class ObservabilitySettings(BaseSettings):
    """Logging settings."""

    model_config = SettingsConfigDict(
        env_prefix="LOG_", env_file=_ENV_FILE, extra="ignore"
    )

    level: str = "INFO"
    json_format: bool = False


class Settings(BaseSettings):
    """Root settings object."""

    model_config = SettingsConfigDict(env_file=_ENV_FILE, extra="ignore")

    app_name: str = "swapify"
    app_url: str = "http://localhost:3000"
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    spotify: SpotifySettings = Field(default_factory=SpotifySettings)
    poll: PollSettings = Field(default_factory=PollSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    @property
    def poll_interval_seconds(self) -> float:
        """Effective poll interval."""
        if self.poll.interval_seconds is not None:
            return self.poll.interval_seconds
        return 60.0 if self.spotify.dev_mode else 30.0

    @property
    def audit_every_n_cycles(self) -> int:
        """Effective playlist audit cadence, in poll cycles."""
        if self.poll.audit_every_n_cycles is not None:
            return max(1, self.poll.audit_every_n_cycles)
        return 6 if self.spotify.dev_mode else 2

    def _get_sqlite_db_path(self) -> Path | None:
        """Return the SQLite file path, or None for other databases / in-memory."""
        url = self.database.url
        if not url.startswith("sqlite"):
            return None
        _, _, path = url.partition(":///")
        if not path or path == ":memory:":
            return None
        return Path(path)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
