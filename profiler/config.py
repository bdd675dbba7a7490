from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_STAGES = [
    "request-counter",
    "error-counter",
    "latency",
    "tracing",
    "memory",
    "throughput",
    "cpu-usage",
    "cpu-time",
    "fs-ops",
    "context-switches",
]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    metrics_log_path: str = Field(default="data/metrics/metrics.log", alias="METRICS_LOG_PATH")
    traces_log_path: str = Field(default="data/traces/tracing.log", alias="TRACES_LOG_PATH")
    export_interval_ms: int = Field(default=1000, alias="EXPORT_INTERVAL_MS", gt=0)
    service_name: str = Field(default="request-profiler", alias="SERVICE_NAME")
    excluded_error_routes: list[str] = Field(default_factory=lambda: ["/favicon.ico"], alias="EXCLUDED_ERROR_ROUTES")
    untracked_paths: list[str] = Field(default_factory=lambda: ["/api/metrics"], alias="UNTRACKED_PATHS")
    enabled_stages: list[str] = Field(default_factory=lambda: list(DEFAULT_STAGES), alias="ENABLED_STAGES")
    target_app: str | None = Field(default=None, alias="TARGET_APP")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()

    @property
    def metrics_path(self) -> Path:
        return Path(self.metrics_log_path)

    @property
    def traces_path(self) -> Path:
        return Path(self.traces_log_path)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
