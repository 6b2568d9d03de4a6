from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "CRM Core"
    app_env: str = "local"
    database_url: str = "sqlite+pysqlite:///./crmcore.db"
    database_echo: bool = False
    log_level: str = "INFO"
    metrics_enabled: bool = False
    otel_enabled: bool = False
    business_timezone: str = "UTC"
    business_hours_start: int = 8
    business_hours_end: int = 18
    max_schedule_ahead_months: int = 6
    default_appointment_duration: int = 60
    min_appointment_duration: int = 15
    max_appointment_duration: int = 480
    upcoming_window_days: int = 7

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="CRM_",
        case_sensitive=False,
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
