"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class LedgerConfig(BaseSettings):
    """Transaction history service configuration"""

    model_config = SettingsConfigDict(
        env_prefix="TXHISTORY_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Storage configuration
    database_url: str = "sqlite:///transactionhistory.db"  # memory://, sqlite:///path, postgresql://...
    storage_timeout_seconds: float = 5.0

    # Business rules configuration
    amount_precision: int = 2  # Decimal places kept on amounts and balances

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 3000
    static_dir: Optional[str] = None  # Served at / when set

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Feature flags
    enable_metrics: bool = True


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config
