from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Core API Settings
    api_host: str = Field("0.0.0.0", alias="API_HOST")
    api_port: int = Field(8000, alias="API_PORT")
    environment: str = Field("development", alias="ENVIRONMENT")
    app_env: str = Field("dev", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    migrate_on_start: bool = Field(False, alias="MIGRATE_ON_START")

    # Durable store. DATABASE_URL wins; otherwise a Supabase/Postgres DSN is built when a password
    # is configured; otherwise a local sqlite file.
    database_url: str | None = Field(None, alias="DATABASE_URL")
    supabase_project_ref: str | None = Field(None, alias="SUPABASE_PROJECT_REF")
    supabase_db_password: str | None = Field(None, alias="SUPABASE_DB_PASSWORD")
    supabase_db_user: str = Field("postgres", alias="SUPABASE_DB_USER")
    supabase_db_name: str = Field("postgres", alias="SUPABASE_DB_NAME")
    sqlite_path: str = Field("./optimizer.db", alias="SQLITE_PATH")
    redis_url: str = Field("redis://localhost:6379/0", alias="REDIS_URL")

    # Benchmark validator
    validation_min_memory_mb: float = Field(100.0, alias="VALIDATION_MIN_MEMORY_MB")
    validation_min_speed_pct: float = Field(5.0, alias="VALIDATION_MIN_SPEED_PCT")
    validation_max_regression_pct: float = Field(2.0, alias="VALIDATION_MAX_REGRESSION_PCT")
    validation_confidence: float = Field(0.8, alias="VALIDATION_CONFIDENCE")
    benchmark_timeout_seconds: float = Field(30.0, alias="BENCHMARK_TIMEOUT_SECONDS")

    # Intelligence aggregator
    aggregation_window_days: int = Field(7, alias="AGGREGATION_WINDOW_DAYS")
    aggregation_max_samples: int = Field(1000, alias="AGGREGATION_MAX_SAMPLES")
    aggregation_chunk_size: int = Field(200, alias="AGGREGATION_CHUNK_SIZE")
    aggregation_budget_seconds: float = Field(300.0, alias="AGGREGATION_BUDGET_SECONDS")

    # Strategy update gating
    gating_min_confidence: float = Field(0.8, alias="GATING_MIN_CONFIDENCE")
    gating_min_sample_size: int = Field(100, alias="GATING_MIN_SAMPLE_SIZE")
    gating_safety_low: float = Field(0.7, alias="GATING_SAFETY_LOW")
    gating_safety_medium: float = Field(0.85, alias="GATING_SAFETY_MEDIUM")
    gating_safety_high: float = Field(0.95, alias="GATING_SAFETY_HIGH")
    canary_phase_duration_hours: int = Field(48, alias="CANARY_PHASE_DURATION_HOURS")

    # Retention. Unset INTELLIGENCE_RETENTION_VERSIONS keeps every version.
    telemetry_retention_days: int = Field(365, alias="TELEMETRY_RETENTION_DAYS")
    intelligence_retention_versions: int | None = Field(None, alias="INTELLIGENCE_RETENTION_VERSIONS")

    strategy_catalog_path: str | None = Field(None, alias="STRATEGY_CATALOG_PATH")

    class Config:
        env_file = ".env"
        case_sensitive = False
        populate_by_name = True
        extra = "allow"  # Allow extra environment variables

    def safety_thresholds(self) -> dict[str, float]:
        return {
            "low": self.gating_safety_low,
            "medium": self.gating_safety_medium,
            "high": self.gating_safety_high,
        }


@lru_cache
def get_settings() -> Settings:
    return Settings()


def reset_settings():
    """Clear cached settings (useful in tests when env vars change)."""
    get_settings.cache_clear()
