from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CHUNK_SIZE = 5 * 1024 * 1024


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "resumable-upload-service"
    app_version: str = "dev"
    host: str = "0.0.0.0"
    port: int = 8000
    database_url: str = "sqlite:///./resumable_uploads.db"
    auto_create_db: bool = True
    storage_root: str = "./data"
    chunk_size_bytes: int = DEFAULT_CHUNK_SIZE
    min_chunk_size_bytes: int = 1
    max_chunk_size_bytes: int = 64 * 1024 * 1024
    peek_max_entries: int = 1000
    hash_block_size: int = 1024 * 1024
    max_finalize_attempts: int = 3
    tracing_enabled: bool = False
    tracing_service_name: str = "resumable-upload-service"
    otlp_endpoint: str = "localhost:4317"
    otlp_insecure: bool = True
    sweep_enabled: bool = False
    sweep_interval_seconds: int = 900
    stale_session_ttl_seconds: int = 7 * 86400


settings = Settings()


class UploadConfig(BaseModel):
    """Client-side knobs for a single scheduled upload."""

    chunk_size: int = Field(default=DEFAULT_CHUNK_SIZE, gt=0)
    max_concurrency: int = Field(default=3, ge=1, le=64)
    max_retries: int = Field(default=3, ge=0)
    base_backoff_ms: int = Field(default=1000, ge=0)
    max_backoff_ms: int = Field(default=30_000, ge=0)
    max_jitter_ms: int = Field(default=500, ge=0)
    speed_window_seconds: float = Field(default=5.0, gt=0)
    snapshot_interval_seconds: float = Field(default=2.0, ge=0)
    snapshot_max_age_seconds: int = Field(default=24 * 3600, gt=0)
    request_timeout_seconds: float = Field(default=60.0, gt=0)

    @model_validator(mode="after")
    def _backoff_bounds(self) -> "UploadConfig":
        if self.max_backoff_ms < self.base_backoff_ms:
            raise ValueError("max_backoff_ms must be >= base_backoff_ms")
        return self
