from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./timeclock.db"
    db_timeout_seconds: float = 5.0  # SQLite busy timeout
    device_default_port: int = 4370
    device_timeout_seconds: float = 5.0
    dedupe_window_seconds: int = 60
    error_message_limit: int = 5  # errors kept in SyncLog.error_message
    sync_interval_minutes: int = 15
    user_sync_hour: int = 2
    sync_lock_stale_seconds: int = 900

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
