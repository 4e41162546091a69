"""
Configuration management for the Central KPI platform
"""
from pydantic import field_validator
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "Central KPI & Client Health Platform"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"
    log_dir: str = "logs"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 3005
    cors_origins: str = "*"  # comma-separated

    # Database
    database_url: str = "sqlite:///./central.db"

    # ClickUp task API
    clickup_base_url: str = "https://api.clickup.com/api/v2"
    clickup_page_size_hint: int = 100
    clickup_max_pages: int = 100  # Fail-safe against looping pagination
    clickup_timeout_seconds: float = 20.0
    clickup_retry_max_attempts: int = 2

    # Background timers
    enable_scheduler: bool = True
    health_monitor_interval_seconds: int = 60
    health_monitor_batch_size: int = 25
    warmup_interval_seconds: int = 600
    warmup_batch_size: int = 10
    warmup_concurrency: int = 4

    # Alerts
    alert_failure_threshold: int = 3
    alert_cooldown_minutes: int = 15
    alert_email_webhook_url: str = ""
    alert_whatsapp_webhook_url: str = ""
    alert_timeout_seconds: float = 15.0
    alert_default_subject: str = "GERENTE.CENTRAL Alert"
    last_error_max_length: int = 1500

    # Dashboards
    dashboard_timezone: str = "America/Sao_Paulo"
    dashboard_cache_seconds: int = 600
    # Status names (substring match, case-insensitive) that mean "not started yet"
    not_started_keywords: str = "todo,to do,backlog,open,new,queue,pendente,a fazer,pending"

    @field_validator("health_monitor_interval_seconds")
    @classmethod
    def _floor_health_interval(cls, value: int) -> int:
        return max(15, value)

    @field_validator("warmup_interval_seconds")
    @classmethod
    def _floor_warmup_interval(cls, value: int) -> int:
        return max(60, value)

    @field_validator("alert_failure_threshold", "alert_cooldown_minutes")
    @classmethod
    def _floor_at_one(cls, value: int) -> int:
        return max(1, value)

    @field_validator("alert_email_webhook_url", "alert_whatsapp_webhook_url")
    @classmethod
    def _strip_urls(cls, value: str) -> str:
        return (value or "").strip()

    @property
    def not_started_keyword_list(self) -> List[str]:
        return [k.strip().lower() for k in self.not_started_keywords.split(",") if k.strip()]

    @property
    def cors_origin_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()] or ["*"]

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
