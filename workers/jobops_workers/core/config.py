from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    log_level: str = "INFO"
    api_base_url: str = "http://localhost:8000"
    request_timeout_seconds: float = 120.0
    poll_interval_seconds: float = 3600.0
    retry_base_seconds: float = 5.0
    max_backoff_seconds: float = 900.0
    otel_enabled: bool = True
    otel_service_name: str = "jobops-workers"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0

    model_config = SettingsConfigDict(env_prefix="JOBOPS_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
