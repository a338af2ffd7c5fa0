from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./activity_sync.db"
    credential_encryption_key: str = ""  # 64 hex chars; `python -m activity_sync genkey`
    log_level: str = "INFO"

    # Scheduler / orchestrator
    sync_tick_minutes: int = 10
    sync_max_workers: int = 4
    sync_lock_max_age_seconds: int = 1800
    sync_default_window_days: int = 30
    credential_failure_threshold: int = 3

    # Outbound HTTP (per adapter call)
    http_timeout_seconds: float = 10.0
    http_max_attempts: int = 5
    http_backoff_seconds: float = 1.0
    http_max_backoff_seconds: float = 30.0
    http_deadline_seconds: float = 120.0

    # Per-platform token bucket
    rate_limit_per_minute: int = 60
    rate_limit_burst: int = 10

    cron_secret: Optional[str] = None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
