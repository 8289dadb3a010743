from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env(name: str) -> AliasChoices:
    return AliasChoices(name, f"CLIPFORGE_{name}")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )

    app_name: str = "clipforge"
    environment: str = Field(default="local", validation_alias=_env("ENVIRONMENT"))
    database_url: str = Field(
        default="postgresql+asyncpg://postgres:postgres@db:5432/clipforge",
        validation_alias=_env("DATABASE_URL"),
    )
    redis_url: str = Field(default="redis://redis:6379/0", validation_alias=_env("REDIS_URL"))
    celery_enabled: bool = Field(default=True, validation_alias=_env("CELERY_ENABLED"))
    scheduler_enabled: bool = Field(default=True, validation_alias=_env("SCHEDULER_ENABLED"))

    openai_api_key: str | None = Field(default=None, validation_alias=_env("OPENAI_API_KEY"))
    openai_chat_model: str = Field(default="gpt-4o", validation_alias=_env("OPENAI_CHAT_MODEL"))
    openai_transcription_model: str = Field(default="whisper-1", validation_alias=_env("OPENAI_TRANSCRIPTION_MODEL"))
    replicate_api_token: str | None = Field(default=None, validation_alias=_env("REPLICATE_API_TOKEN"))
    transcription_backend: str = Field(default="openai", validation_alias=_env("TRANSCRIPTION_BACKEND"))
    render_backend: str = Field(default="replicate", validation_alias=_env("RENDER_BACKEND"))
    replicate_whisper_version: str = Field(
        default="openai/whisper:4d50797290df275329f202e48c76360b3f22b08d28c196cbc54600319435f8d2",
        validation_alias=_env("REPLICATE_WHISPER_VERSION"),
    )
    replicate_ffmpeg_version: str = Field(
        default="cjwbw/ffmpeg:12af04f38a75ad6e41515db0e5e8a83ae3a9d15eac0cdc0e0a4bd4e9fb3b3c5a",
        validation_alias=_env("REPLICATE_FFMPEG_VERSION"),
    )

    data_dir: str = Field(default="/data", validation_alias=_env("DATA_DIR"))
    public_base_url: str = Field(default="http://localhost:8000", validation_alias=_env("PUBLIC_BASE_URL"))
    storage_signing_secret: str = Field(default="dev-signing-secret", validation_alias=_env("STORAGE_SIGNING_SECRET"))
    signed_url_ttl_sec: int = Field(default=3600, validation_alias=_env("SIGNED_URL_TTL_SEC"))

    cron_secret: str | None = Field(default=None, validation_alias=_env("CRON_SECRET"))
    twitter_client_id: str | None = Field(default=None, validation_alias=_env("TWITTER_CLIENT_ID"))
    twitter_client_secret: str | None = Field(default=None, validation_alias=_env("TWITTER_CLIENT_SECRET"))
    linkedin_client_id: str | None = Field(default=None, validation_alias=_env("LINKEDIN_CLIENT_ID"))
    linkedin_client_secret: str | None = Field(default=None, validation_alias=_env("LINKEDIN_CLIENT_SECRET"))

    default_plan: str = Field(default="free", validation_alias=_env("DEFAULT_PLAN"))
    publish_sweep_interval_minutes: int = Field(default=5, validation_alias=_env("PUBLISH_SWEEP_INTERVAL_MINUTES"))
    publish_sweep_batch_size: int = Field(default=10, validation_alias=_env("PUBLISH_SWEEP_BATCH_SIZE"))
    pipeline_max_retries: int = Field(default=3, validation_alias=_env("PIPELINE_MAX_RETRIES"))
    render_max_retries: int = Field(default=2, validation_alias=_env("RENDER_MAX_RETRIES"))
    render_timeout_sec: int = Field(default=900, validation_alias=_env("RENDER_TIMEOUT_SEC"))
    transcription_timeout_sec: int = Field(default=1800, validation_alias=_env("TRANSCRIPTION_TIMEOUT_SEC"))
    max_render_concurrency: int = Field(default=2, validation_alias=_env("MAX_RENDER_CONCURRENCY"))
    redis_semaphore_ttl_sec: int = Field(default=3600, validation_alias=_env("REDIS_SEMAPHORE_TTL_SEC"))
    semaphore_wait_timeout_sec: int = Field(default=1200, validation_alias=_env("SEMAPHORE_WAIT_TIMEOUT_SEC"))

    watchdog_enabled: bool = Field(default=True, validation_alias=_env("WATCHDOG_ENABLED"))
    watchdog_interval_minutes: int = Field(default=10, validation_alias=_env("WATCHDOG_INTERVAL_MINUTES"))
    stuck_pipeline_minutes: int = Field(default=90, validation_alias=_env("STUCK_PIPELINE_MINUTES"))
    stuck_render_minutes: int = Field(default=45, validation_alias=_env("STUCK_RENDER_MINUTES"))
    stuck_publishing_minutes: int = Field(default=30, validation_alias=_env("STUCK_PUBLISHING_MINUTES"))

    @property
    def async_database_url(self) -> str:
        if self.database_url.startswith("postgresql+"):
            return self.database_url
        if self.database_url.startswith("postgresql://"):
            return self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return self.database_url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
