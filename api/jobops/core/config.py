from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "jobops-api"
    environment: str = "dev"
    log_level: str = "INFO"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    llm_base_url: str = "https://api.openai.com"
    llm_api_key: str | None = None
    llm_model: str = "gpt-4o-mini"
    llm_timeout_seconds: float = 60.0
    adzuna_base_url: str = "https://api.adzuna.com/v1/api/jobs"
    adzuna_timeout_seconds: float = 15.0
    # Seed values for AppSettings on first run.
    adzuna_app_id: str | None = None
    adzuna_app_key: str | None = None
    ukvisajobs_email: str | None = None
    ukvisajobs_password: str | None = None
    webhook_secret: str | None = None
    sponsor_register_path: str | None = None
    resume_max_projects_limit: int = 10
    run_channel_max_chunks: int = 64
    run_history_max_turns: int = 10
    otel_enabled: bool = True
    otel_service_name: str = "jobops-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0

    model_config = SettingsConfigDict(env_prefix="JOBOPS_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
