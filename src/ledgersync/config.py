from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./ledgersync.db"
    xero_api_base_url: str = "https://api.xero.com/api.xro/2.0"
    xero_request_timeout_seconds: float = 30.0
    push_batch_size: int = 50
    log_retention_days: int = 90
    stats_window_days: int = 30
    health_failure_threshold: int = 2  # ERROR entries in the window before "critical"
    token_refresh_window_minutes: int = 15
    default_user_id: str = "system"  # attributed to scheduled and CLI runs
    scheduled_pull_enabled: bool = False
    scheduled_pull_hour: int = 2
    log_cleanup_hour: int = 4

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
