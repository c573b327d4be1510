"""Application configuration using environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, AnyHttpUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`.

    The model is frozen: a run receives one immutable snapshot and any
    state derived during the run lives in ``SyncState`` instead.
    """

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    calendar_id: str = Field(
        default="primary",
        validation_alias=AliasChoices("CALENDAR_ID", "calendar_id"),
    )
    default_event_duration_minutes: int = Field(
        default=60,
        ge=1,
        validation_alias=AliasChoices(
            "DEFAULT_EVENT_DURATION_MINUTES", "default_event_duration_minutes"
        ),
    )

    # Batch transport
    batch_size: int = Field(
        default=100,
        ge=1,
        le=1000,
        validation_alias=AliasChoices("BATCH_SIZE", "batch_size"),
    )
    inter_batch_delay_ms: int = Field(
        default=500,
        ge=0,
        validation_alias=AliasChoices("INTER_BATCH_DELAY_MS", "inter_batch_delay_ms"),
    )
    max_batch_attempts: int = Field(
        default=4,
        ge=1,
        validation_alias=AliasChoices("MAX_BATCH_ATTEMPTS", "max_batch_attempts"),
    )
    base_backoff_ms: int = Field(
        default=400,
        ge=0,
        validation_alias=AliasChoices("BASE_BACKOFF_MS", "base_backoff_ms"),
    )
    max_backoff_ms: int = Field(
        default=20_000,
        ge=0,
        validation_alias=AliasChoices("MAX_BACKOFF_MS", "max_backoff_ms"),
    )
    list_max_attempts: int = Field(
        default=3,
        ge=1,
        validation_alias=AliasChoices("LIST_MAX_ATTEMPTS", "list_max_attempts"),
    )
    request_timeout: float = Field(
        default=60.0,
        ge=1,
        validation_alias=AliasChoices("SYNC_REQUEST_TIMEOUT", "request_timeout"),
    )
    api_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://www.googleapis.com/calendar/v3"),
        validation_alias=AliasChoices("CALENDAR_API_BASE_URL", "api_base_url"),
    )
    batch_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://www.googleapis.com/batch/calendar/v3"),
        validation_alias=AliasChoices("CALENDAR_BATCH_URL", "batch_url"),
    )

    # Identity and listing
    include_description_in_identity: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "INCLUDE_DESCRIPTION_IN_IDENTITY", "include_description_in_identity"
        ),
    )
    include_reminder_in_identity: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "INCLUDE_REMINDER_IN_IDENTITY", "include_reminder_in_identity"
        ),
    )
    use_sync_token: bool = Field(
        default=False,
        validation_alias=AliasChoices("USE_SYNC_TOKEN", "use_sync_token"),
    )
    quota_user: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("QUOTA_USER", "quota_user"),
    )
    overwrite_on_conflict: bool = Field(
        default=True,
        validation_alias=AliasChoices("OVERWRITE_ON_CONFLICT", "overwrite_on_conflict"),
    )

    # Event content
    time_zone: str = Field(
        default="UTC",
        validation_alias=AliasChoices("SYNC_TIME_ZONE", "time_zone"),
    )
    vault_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("VAULT_NAME", "vault_name"),
    )
    sync_priority_to_description: bool = Field(
        default=True,
        validation_alias=AliasChoices(
            "SYNC_PRIORITY_TO_DESCRIPTION", "sync_priority_to_description"
        ),
    )
    sync_tags_to_description: bool = Field(
        default=True,
        validation_alias=AliasChoices("SYNC_TAGS_TO_DESCRIPTION", "sync_tags_to_description"),
    )
    sync_scheduled_date_to_description: bool = Field(
        default=True,
        validation_alias=AliasChoices(
            "SYNC_SCHEDULED_DATE_TO_DESCRIPTION",
            "sync_scheduled_date_to_description",
        ),
    )

    # Notices and scheduling
    show_notices: bool = Field(
        default=True,
        validation_alias=AliasChoices("SHOW_NOTICES", "show_notices"),
    )
    show_errors: bool = Field(
        default=True,
        validation_alias=AliasChoices("SHOW_ERRORS", "show_errors"),
    )
    auto_sync: bool = Field(
        default=False,
        validation_alias=AliasChoices("AUTO_SYNC", "auto_sync"),
    )
    sync_interval_minutes: int = Field(
        default=15,
        ge=1,
        validation_alias=AliasChoices("SYNC_INTERVAL_MINUTES", "sync_interval_minutes"),
    )

    # Storage
    state_path: Path = Field(
        default_factory=lambda: Path("data/sync_state.json"),
        validation_alias=AliasChoices("SYNC_STATE_PATH", "state_path"),
    )
    tasks_path: Path = Field(
        default_factory=lambda: Path("data/tasks.json"),
        validation_alias=AliasChoices("TASKS_PATH", "tasks_path"),
    )
    token_path: Path = Field(
        default_factory=lambda: Path("data/tokens/google_token.json"),
        validation_alias=AliasChoices("GOOGLE_TOKEN_PATH", "token_path"),
    )

    @property
    def calendar_api_base(self) -> str:
        """Return the Calendar API base URL without a trailing slash."""

        return str(self.api_base_url).rstrip("/")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


__all__ = ["PROJECT_ROOT", "Settings", "get_settings"]
