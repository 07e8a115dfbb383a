"""
Configuration Management Module
Loads application configuration from config.yaml, with environment overrides

Environment variables use the TALLY_DASHBOARD_ prefix and "__" between
nesting levels, e.g. TALLY_DASHBOARD_TALLY__PORT=9001.
"""

from pathlib import Path
from typing import List
import yaml
from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


class TallyConfig(BaseModel):
    """Tally connection configuration"""
    server: str = "localhost"
    port: int = 9000
    company: str = ""
    timeout: float = 60.0
    min_request_interval: float = 5.0


class DatabaseConfig(BaseModel):
    """Database configuration"""
    path: str = "./data/dashboard.db"


class SyncConfig(BaseModel):
    """Sync configuration

    Intervals are in seconds. A poll_interval of 0 disables polling
    (manual triggers only).
    """
    autostart: bool = True
    poll_interval: int = 120
    master_interval: int = 300
    reconciliation_interval: int = 0
    batch_days: int = 7
    batch_delay: float = 2.0
    draft_kinds: List[str] = ["Pending Sales Bill"]
    conversion_kinds: List[str] = ["Sales", "Credit Sales", "Apto Bill", "Apto Sales"]
    conversion_tolerance: float = 0.05
    party_groups: List[str] = ["Sundry Debtors", "Sundry Creditors"]


class VoucherTypesConfig(BaseModel):
    """Voucher kinds the dashboard cares about"""
    sales: List[str] = ["Sales", "Credit Sales", "Pending Sales Bill", "A Pto Bill"]
    receipt: List[str] = ["Bank Receipt", "Counter Receipt", "Receipt", "Dashboard Receipt"]


class ApiConfig(BaseModel):
    """API configuration"""
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: List[str] = ["http://localhost:3000"]


class LoggingConfig(BaseModel):
    """Logging configuration"""
    level: str = "INFO"
    file: str = "./logs/app.log"
    max_size: int = 10
    backup_count: int = 5
    console: bool = True
    colorize: bool = True


class AppConfig(BaseSettings):
    """Main application configuration"""
    model_config = SettingsConfigDict(
        env_prefix="TALLY_DASHBOARD_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    tally: TallyConfig = TallyConfig()
    database: DatabaseConfig = DatabaseConfig()
    sync: SyncConfig = SyncConfig()
    voucher_types: VoucherTypesConfig = VoucherTypesConfig()
    api: ApiConfig = ApiConfig()
    logging: LoggingConfig = LoggingConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Environment wins over values read from the YAML file
        return env_settings, init_settings, dotenv_settings, file_secret_settings


def load_config(config_path: str = "config.yaml") -> AppConfig:
    """Load configuration from YAML file"""
    config_file = Path(config_path)

    if config_file.exists():
        with open(config_file, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}
            return AppConfig(**config_data)

    return AppConfig()


def save_config(config: AppConfig, config_path: str = "config.yaml") -> None:
    """Save configuration to YAML file"""
    config_file = Path(config_path)

    with open(config_file, "w", encoding="utf-8") as f:
        yaml.dump(config.model_dump(), f, default_flow_style=False, allow_unicode=True)
