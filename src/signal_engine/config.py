from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Core settings
    environment: str = Field("development", alias="ENVIRONMENT")
    app_env: str = Field("dev", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    api_host: str = Field("0.0.0.0", alias="API_HOST")
    api_port: int = Field(8000, alias="API_PORT")

    # Storage / broker
    database_url: str = Field("sqlite:///./signal_engine.db", alias="DATABASE_URL")
    redis_url: str = Field("redis://localhost:6379/0", alias="REDIS_URL")

    # Event applier
    engine_processor_id: str = Field("event_applier", alias="ENGINE_PROCESSOR_ID")
    engine_batch_size: int = Field(2000, alias="ENGINE_BATCH_SIZE")
    engine_idle_delay_seconds: float = Field(10.0, alias="ENGINE_IDLE_DELAY_SECONDS")
    engine_credibility: float = Field(0.5, alias="ENGINE_CREDIBILITY")  # fixed credibility term of the sentiment weight
    engine_dedupe_entities: bool = Field(True, alias="ENGINE_DEDUPE_ENTITIES")
    engine_runner: str = Field("celery", alias="ENGINE_RUNNER")  # celery|thread

    # Read path / snapshots
    engine_snapshot_top_n: int = Field(10, alias="ENGINE_SNAPSHOT_TOP_N")
    engine_snapshot_window: str = Field("15m", alias="ENGINE_SNAPSHOT_WINDOW")
    engine_metrics_bucket_count: int = Field(60, alias="ENGINE_METRICS_BUCKET_COUNT")
    engine_health_degraded_ms: int = Field(10_000, alias="ENGINE_HEALTH_DEGRADED_MS")
    engine_health_error_ms: int = Field(60_000, alias="ENGINE_HEALTH_ERROR_MS")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "allow"  # Allow extra environment variables


@lru_cache
def get_settings() -> Settings:
    return Settings()


def reset_settings():
    """Clear cached settings (useful in tests when env vars change)."""
    get_settings.cache_clear()
