from __future__ import annotations

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

STATE_BACKENDS = {"file", "sql"}
LOG_FORMATS = {"text", "json"}


class Settings(BaseSettings):
    app_env: str = Field(default="dev")

    log_level: str = Field(default="INFO")
    log_file: str = Field(default="data/deployctl.log")
    log_db_queries: bool = Field(default=False)
    log_format: str = Field(default="text")
    log_sql_max_length: int = Field(default=400)

    services_file: str = Field(default="services.yaml")

    state_backend: str = Field(default="file")
    state_dir: str = Field(default="data/state")
    database_url: str = Field(default="")
    db_slow_query_ms: float = Field(default=250.0)

    health_check_max_attempts: int = Field(default=5)
    health_check_interval_seconds: float = Field(default=5.0)
    health_check_timeout_seconds: float = Field(default=0.0)
    command_timeout_seconds: int = Field(default=300)

    history_retention_days: int = Field(default=30)
    monitor_interval_seconds: float = Field(default=60.0)

    lock_file: str = Field(default="data/deployctl.lock")
    metrics_textfile: str = Field(default="")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_settings(self) -> "Settings":
        issues: list[str] = []
        backend = self.state_backend.strip().lower()
        if backend not in STATE_BACKENDS:
            issues.append(
                f"STATE_BACKEND must be one of {', '.join(sorted(STATE_BACKENDS))}, got '{self.state_backend}'."
            )
        if backend == "sql" and not self.database_url:
            issues.append("DATABASE_URL must be set when STATE_BACKEND=sql.")
        if self.health_check_max_attempts < 1:
            issues.append("HEALTH_CHECK_MAX_ATTEMPTS must be at least 1.")
        if self.health_check_interval_seconds < 0:
            issues.append("HEALTH_CHECK_INTERVAL_SECONDS must not be negative.")
        if self.log_format.strip().lower() not in LOG_FORMATS:
            issues.append(f"LOG_FORMAT must be one of {', '.join(sorted(LOG_FORMATS))}, got '{self.log_format}'.")
        if issues:
            raise ValueError(" ".join(issues))
        self.state_backend = backend
        self.log_format = self.log_format.strip().lower()
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
