"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings


class YieldLedgerConfig(BaseSettings):
    """Ledger engine configuration"""

    # Database configuration
    database_url: str = "sqlite:///yield_ledger.db"  # memory://, sqlite:///path, postgresql://...

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Business rules configuration
    default_yield_rate: Decimal = Decimal("0.12")
    default_monthly_rate: Decimal = Decimal("0.01")
    system_user_id: int = 1  # Recorded as processed_by for cron payouts
    # debit_full: debit the whole amount even when deposits cannot cover it
    # reject: refuse withdrawals larger than total active deposit principal
    withdrawal_shortfall_policy: str = "debit_full"

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "YIELD_LEDGER_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = YieldLedgerConfig()


def get_config() -> YieldLedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> YieldLedgerConfig:
    """Reload configuration from environment"""
    global config
    config = YieldLedgerConfig()
    return config
