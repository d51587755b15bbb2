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

    app_name: str = "movie-factory"
    environment: str = Field(default="local", validation_alias=AliasChoices("ENVIRONMENT", "MOVIE_FACTORY_ENVIRONMENT"))
    database_url: str = Field(
        default="postgresql+asyncpg://postgres:postgres@db:5432/movie_factory",
        validation_alias=AliasChoices("DATABASE_URL", "MOVIE_FACTORY_DATABASE_URL"),
    )
    redis_url: str = Field(default="redis://redis:6379/0", validation_alias=AliasChoices("REDIS_URL", "MOVIE_FACTORY_REDIS_URL"))
    scheduler_enabled: bool = Field(default=True, validation_alias=AliasChoices("SCHEDULER_ENABLED", "MOVIE_FACTORY_SCHEDULER_ENABLED"))
    cron_secret: str | None = Field(default=None, validation_alias=AliasChoices("CRON_SECRET", "MOVIE_FACTORY_CRON_SECRET"))

    # Orchestrator
    movie_process_interval_minutes: int = Field(default=2, validation_alias=AliasChoices("MOVIE_PROCESS_INTERVAL_MINUTES", "MOVIE_FACTORY_MOVIE_PROCESS_INTERVAL_MINUTES"))
    movie_lock_backend: str = Field(default="database", validation_alias=AliasChoices("MOVIE_LOCK_BACKEND", "MOVIE_FACTORY_MOVIE_LOCK_BACKEND"))
    movie_lock_ttl_sec: int = Field(default=300, validation_alias=AliasChoices("MOVIE_LOCK_TTL_SEC", "MOVIE_FACTORY_MOVIE_LOCK_TTL_SEC"))
    movie_batch_size: int = Field(default=10, validation_alias=AliasChoices("MOVIE_BATCH_SIZE", "MOVIE_FACTORY_MOVIE_BATCH_SIZE"))
    movie_max_parallel: int = Field(default=1, validation_alias=AliasChoices("MOVIE_MAX_PARALLEL", "MOVIE_FACTORY_MOVIE_MAX_PARALLEL"))
    movie_min_start_credits: int = Field(default=5, validation_alias=AliasChoices("MOVIE_MIN_START_CREDITS", "MOVIE_FACTORY_MOVIE_MIN_START_CREDITS"))
    movie_max_concurrent_per_user: int = Field(default=2, validation_alias=AliasChoices("MOVIE_MAX_CONCURRENT_PER_USER", "MOVIE_FACTORY_MOVIE_MAX_CONCURRENT_PER_USER"))
    movie_max_scenes: int = Field(default=150, validation_alias=AliasChoices("MOVIE_MAX_SCENES", "MOVIE_FACTORY_MOVIE_MAX_SCENES"))
    movie_default_model: str = Field(default="kling-2.6", validation_alias=AliasChoices("MOVIE_DEFAULT_MODEL", "MOVIE_FACTORY_MOVIE_DEFAULT_MODEL"))

    # Collaborators
    generation_provider: str = Field(default="stub", validation_alias=AliasChoices("GENERATION_PROVIDER", "MOVIE_FACTORY_GENERATION_PROVIDER"))
    fal_key: str | None = Field(default=None, validation_alias=AliasChoices("FAL_KEY", "MOVIE_FACTORY_FAL_KEY"))
    fal_queue_url: str = Field(default="https://queue.fal.run", validation_alias=AliasChoices("FAL_QUEUE_URL", "MOVIE_FACTORY_FAL_QUEUE_URL"))
    fal_webhook_verify: bool = Field(default=True, validation_alias=AliasChoices("FAL_WEBHOOK_VERIFY", "MOVIE_FACTORY_FAL_WEBHOOK_VERIFY"))
    fal_jwks_url: str = Field(default="https://rest.alpha.fal.ai/.well-known/jwks.json", validation_alias=AliasChoices("FAL_JWKS_URL", "MOVIE_FACTORY_FAL_JWKS_URL"))
    fal_webhook_max_skew_sec: int = Field(default=300, validation_alias=AliasChoices("FAL_WEBHOOK_MAX_SKEW_SEC", "MOVIE_FACTORY_FAL_WEBHOOK_MAX_SKEW_SEC"))
    provider_timeout_sec: int = Field(default=30, validation_alias=AliasChoices("PROVIDER_TIMEOUT_SEC", "MOVIE_FACTORY_PROVIDER_TIMEOUT_SEC"))
    public_base_url: str = Field(default="http://localhost:8000", validation_alias=AliasChoices("PUBLIC_BASE_URL", "MOVIE_FACTORY_PUBLIC_BASE_URL"))
    data_dir: str = Field(default="/data", validation_alias=AliasChoices("DATA_DIR", "MOVIE_FACTORY_DATA_DIR"))
    narrator: str = Field(default="none", validation_alias=AliasChoices("NARRATOR", "MOVIE_FACTORY_NARRATOR"))
    ffmpeg_bin: str = Field(default="ffmpeg", validation_alias=AliasChoices("FFMPEG_BIN", "MOVIE_FACTORY_FFMPEG_BIN"))
    pipeline_ffmpeg_timeout_sec: int = Field(default=240, validation_alias=AliasChoices("PIPELINE_FFMPEG_TIMEOUT_SEC", "MOVIE_FACTORY_PIPELINE_FFMPEG_TIMEOUT_SEC"))
    download_timeout_sec: int = Field(default=30, validation_alias=AliasChoices("DOWNLOAD_TIMEOUT_SEC", "MOVIE_FACTORY_DOWNLOAD_TIMEOUT_SEC"))

    telegram_bot_token: str | None = Field(default=None, validation_alias=AliasChoices("TELEGRAM_BOT_TOKEN", "MOVIE_FACTORY_TELEGRAM_BOT_TOKEN"))
    telegram_chat_id: str | None = Field(default=None, validation_alias=AliasChoices("TELEGRAM_CHAT_ID", "MOVIE_FACTORY_TELEGRAM_CHAT_ID"))

    @property
    def async_database_url(self) -> str:
        if self.database_url.startswith("postgresql+"):
            return self.database_url
        if self.database_url.startswith("postgresql://"):
            return self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return self.database_url

    @property
    def ffmpeg_timeout_sec(self) -> int:
        """ffmpeg runs inside a locked orchestrator run, so it never outlives 80% of the lock TTL."""
        return max(1, min(self.pipeline_ffmpeg_timeout_sec, self.movie_lock_ttl_sec * 4 // 5))

    @property
    def webhook_url(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/api/movies/generations/webhook"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
