"""
Configuration Management Module

Centralized settings for the repair workflow core, loaded from DRMS_*
environment variables (or a .env file) via pydantic-settings.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class DRMSConfig(BaseSettings):
    """Device repair workflow core configuration"""

    # Persistence
    database_url: str = "sqlite:///drms_workflows.db"
    storage_timeout_seconds: float = 5.0

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8095

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Workflow execution
    max_auto_hops: int = 50
    version_conflict_retries: int = 3
    definition_max_name_length: int = 255

    # Scheduled jobs
    scheduler_interval_minutes: int = 15
    scheduler_max_workers: int = 4

    # Notification delivery
    notification_max_retries: int = 3
    notification_backoff_base_minutes: int = 5
    notification_backoff_cap_minutes: int = 240
    notification_retention_days: int = 90
    notification_webhook_url: Optional[str] = None
    webhook_timeout_seconds: float = 10.0
    default_notification_channels: List[str] = ["in_app", "email"]

    # Approval reminders
    approval_reminder_after_hours: int = 24
    approval_reminder_interval_hours: int = 24

    class Config:
        env_prefix = "DRMS_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = DRMSConfig()


def get_config() -> DRMSConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> DRMSConfig:
    """Reload configuration from environment"""
    global config
    config = DRMSConfig()
    return config
