from pathlib import Path
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # APS application credentials
    aps_client_id: str = ""
    aps_client_secret: str = ""
    aps_base_url: str = "https://developer.api.autodesk.com"
    aps_service_scopes: str = "code:all bucket:create bucket:read data:read data:create data:write"

    # Design Automation
    design_automation_url: str = "https://developer.api.autodesk.com/da/us-east/v3"
    activity_nickname: str = ""  # Falls back to aps_client_id
    activity_name: str = "FileUpgraderAppActivity"
    activity_alias: str = "dev"
    webhook_url: str = "http://localhost:8080/api/callback/conversion"

    # Scheduling
    max_concurrent_conversions: int = 5  # Matches the Design Automation admission limit
    max_attempts: int = 3
    retry_delay_seconds: float = 5.0
    retry_backoff_multiplier: float = 1.0  # 1.0 = fixed delay
    retry_max_delay_seconds: float = 60.0
    slot_poll_interval_seconds: float = 2.0
    dispatch_round_delay_seconds: float = 1.0

    # Batches
    default_supported_extensions: List[str] = ["rvt", "rfa", "rte"]
    progress_preview_count: int = 10
    dead_letter_limit: int = 100

    # Staleness sweep
    work_item_max_age_hours: int = 24
    sweep_interval_seconds: int = 300
    finished_batch_retention_seconds: int = 3600
    work_item_snapshot_path: str = ""  # Empty = outstanding work items are only logged on shutdown

    # HTTP clients
    http_timeout_seconds: float = 30.0
    token_refresh_margin_seconds: int = 600

    # Logging konfiguration
    log_level: str = "INFO"
    log_file_path: str = "logs/file_upgrader.log"
    log_retention_days: int = 30

    model_config = SettingsConfigDict(env_file="settings.env", extra="ignore")

    @property
    def log_directory(self) -> Path:
        """Returnerer log directory som Path objekt"""
        return Path(self.log_file_path).parent

    @property
    def activity_id(self) -> str:
        nickname = self.activity_nickname or self.aps_client_id
        return f"{nickname}.{self.activity_name}+{self.activity_alias}"
