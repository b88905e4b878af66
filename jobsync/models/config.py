"""Configuration models for the job sync service."""

from pydantic import BaseModel, Field, HttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict


class SourceConfig(BaseModel):
    """Configuration for the CRM (source of truth) API."""

    api_url: HttpUrl = Field(default=..., description="Base URL of the CRM REST API")
    auth_token: str = Field(default=..., description="Bearer token for the CRM API")
    timeout_seconds: float = Field(
        default=30.0, gt=0, description="Timeout for a single outbound call"
    )
    retry_attempts: int = Field(
        default=3, ge=1, le=10, description="Attempts for transient network failures"
    )
    retry_delay_seconds: float = Field(
        default=1.0, ge=0, description="Linear backoff step between attempts"
    )


class TargetConfig(BaseModel):
    """Configuration for the CMS (target) API."""

    api_url: HttpUrl = Field(
        default="https://api.webflow.com/v2", description="Base URL of the CMS API"
    )
    api_token: str = Field(default=..., description="Bearer token for the CMS API")
    site_id: str = Field(default=..., description="Site to publish")
    jobs_collection_id: str = Field(default=..., description="Collection mirroring jobs")
    sectors_collection_id: str | None = Field(
        default=None, description="Lookup collection for sector references"
    )
    timeout_seconds: float = Field(default=30.0, gt=0)
    rate_limit_per_minute: int = Field(
        default=60, ge=1, description="Outbound call budget per 60 second window"
    )
    retry_attempts: int = Field(default=3, ge=1, le=10)
    retry_delay_seconds: float = Field(default=1.0, ge=0)


class SyncConfig(BaseModel):
    """Configuration for the reconciliation engine."""

    concurrency: int = Field(
        default=5, ge=1, le=50, description="Worker pool size for the upsert phase"
    )
    incremental_fallback_lookback_hours: float | None = Field(
        default=24.0,
        gt=0,
        description="Window used by incremental runs with no baseline; None scans everything",
    )
    incremental_unpublish_scan: bool = Field(
        default=False,
        description="Run a policy-driven archive scan at the end of incremental runs",
    )
    precision_buffer_seconds: float = Field(
        default=1.0, ge=0, description="Tolerance for client-side change filtering"
    )
    internal_sector_id: str | None = Field(
        default=None, description="Sector reference forced onto internal vacancies"
    )
    state_backend: str = Field(default="file", pattern="^(file|memory)$")
    state_file: str = Field(default="data/sync-state.json")


class PublishConfig(BaseModel):
    """Configuration for site publishing."""

    auto_publish: bool = Field(
        default=False, description="Publish the site after runs that changed content"
    )
    min_interval_seconds: float = Field(
        default=10.0, ge=0, description="Minimum time between publish calls"
    )


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    json_logs: bool = Field(
        default=True,
        description="If True, output JSON logs. If False, use console format.",
    )
    log_file: str | None = Field(
        default=None,
        description="Optional path to log file. If None, logs only to stdout.",
    )


class AppConfig(BaseSettings):
    """Main application configuration.

    Values can be supplied through environment variables with the JOBSYNC_
    prefix, using ``__`` for nesting (``JOBSYNC_TARGET__SITE_ID``).
    """

    model_config = SettingsConfigDict(
        env_prefix="JOBSYNC_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    source: SourceConfig
    target: TargetConfig
    sync: SyncConfig = Field(default_factory=SyncConfig)
    publish: PublishConfig = Field(default_factory=PublishConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
