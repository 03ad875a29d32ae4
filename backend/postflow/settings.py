from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )

    app_name: str = "postflow"
    environment: str = Field(default="local", validation_alias=AliasChoices("ENVIRONMENT", "POSTFLOW_ENVIRONMENT"))
    database_url: str = Field(
        default="postgresql+asyncpg://postgres:postgres@db:5432/postflow",
        validation_alias=AliasChoices("DATABASE_URL", "POSTFLOW_DATABASE_URL"),
    )
    redis_url: str = Field(default="redis://redis:6379/0", validation_alias=AliasChoices("REDIS_URL", "POSTFLOW_REDIS_URL"))

    # Meta Graph API
    graph_api_version: str = Field(default="v24.0", validation_alias=AliasChoices("GRAPH_API_VERSION", "POSTFLOW_GRAPH_API_VERSION"))
    graph_api_host: str = Field(default="https://graph.facebook.com", validation_alias=AliasChoices("GRAPH_API_HOST", "POSTFLOW_GRAPH_API_HOST"))
    meta_app_id: str | None = Field(default=None, validation_alias=AliasChoices("META_APP_ID", "POSTFLOW_META_APP_ID"))
    meta_app_secret: str | None = Field(default=None, validation_alias=AliasChoices("META_APP_SECRET", "POSTFLOW_META_APP_SECRET"))
    external_call_timeout_sec: float = Field(default=30.0, validation_alias=AliasChoices("EXTERNAL_CALL_TIMEOUT_SEC", "POSTFLOW_EXTERNAL_CALL_TIMEOUT_SEC"))

    # Container processing poll (reels, video carousel items)
    media_poll_max_attempts: int = Field(default=60, validation_alias=AliasChoices("MEDIA_POLL_MAX_ATTEMPTS", "POSTFLOW_MEDIA_POLL_MAX_ATTEMPTS"))
    media_poll_initial_wait_sec: float = Field(default=3.0, validation_alias=AliasChoices("MEDIA_POLL_INITIAL_WAIT_SEC", "POSTFLOW_MEDIA_POLL_INITIAL_WAIT_SEC"))
    media_poll_max_wait_sec: float = Field(default=15.0, validation_alias=AliasChoices("MEDIA_POLL_MAX_WAIT_SEC", "POSTFLOW_MEDIA_POLL_MAX_WAIT_SEC"))
    media_poll_backoff: float = Field(default=1.5, validation_alias=AliasChoices("MEDIA_POLL_BACKOFF", "POSTFLOW_MEDIA_POLL_BACKOFF"))

    # Credentials
    credentials_encryption_key: str | None = Field(
        default=None, validation_alias=AliasChoices("CREDENTIALS_ENCRYPTION_KEY", "POSTFLOW_CREDENTIALS_ENCRYPTION_KEY")
    )
    token_refresh_skew_sec: int = Field(default=60, validation_alias=AliasChoices("TOKEN_REFRESH_SKEW_SEC", "POSTFLOW_TOKEN_REFRESH_SKEW_SEC"))

    # Media
    media_cdn_base_url: str | None = Field(default=None, validation_alias=AliasChoices("MEDIA_CDN_BASE_URL", "POSTFLOW_MEDIA_CDN_BASE_URL"))

    # Publish queue
    publish_max_attempts: int = Field(default=3, validation_alias=AliasChoices("PUBLISH_MAX_ATTEMPTS", "POSTFLOW_PUBLISH_MAX_ATTEMPTS"))
    publish_backoff_base_sec: int = Field(default=5, validation_alias=AliasChoices("PUBLISH_BACKOFF_BASE_SEC", "POSTFLOW_PUBLISH_BACKOFF_BASE_SEC"))
    publish_worker_concurrency: int = Field(default=3, validation_alias=AliasChoices("PUBLISH_WORKER_CONCURRENCY", "POSTFLOW_PUBLISH_WORKER_CONCURRENCY"))
    publish_task_time_limit_sec: int = Field(default=30 * 60, validation_alias=AliasChoices("PUBLISH_TASK_TIME_LIMIT_SEC", "POSTFLOW_PUBLISH_TASK_TIME_LIMIT_SEC"))
    completed_job_retention_sec: int = Field(default=24 * 3600, validation_alias=AliasChoices("COMPLETED_JOB_RETENTION_SEC", "POSTFLOW_COMPLETED_JOB_RETENTION_SEC"))

    # Reconciliation sweep
    scheduler_enabled: bool = Field(default=True, validation_alias=AliasChoices("SCHEDULER_ENABLED", "POSTFLOW_SCHEDULER_ENABLED"))
    reconcile_interval_minutes: int = Field(default=5, validation_alias=AliasChoices("RECONCILE_INTERVAL_MINUTES", "POSTFLOW_RECONCILE_INTERVAL_MINUTES"))
    orphan_scheduled_minutes: int = Field(default=10, validation_alias=AliasChoices("ORPHAN_SCHEDULED_MINUTES", "POSTFLOW_ORPHAN_SCHEDULED_MINUTES"))
    stuck_publishing_minutes: int = Field(default=45, validation_alias=AliasChoices("STUCK_PUBLISHING_MINUTES", "POSTFLOW_STUCK_PUBLISHING_MINUTES"))

    # Ops alerts
    telegram_bot_token: str | None = Field(default=None, validation_alias=AliasChoices("TELEGRAM_BOT_TOKEN", "POSTFLOW_TELEGRAM_BOT_TOKEN"))
    telegram_chat_id: str | None = Field(default=None, validation_alias=AliasChoices("TELEGRAM_CHAT_ID", "POSTFLOW_TELEGRAM_CHAT_ID"))

    @property
    def async_database_url(self) -> str:
        if self.database_url.startswith("postgresql+"):
            return self.database_url
        if self.database_url.startswith("postgresql://"):
            return self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return self.database_url

    @property
    def graph_api_base(self) -> str:
        return f"{self.graph_api_host.rstrip('/')}/{self.graph_api_version}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
