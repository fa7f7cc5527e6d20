"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class BankcoreConfig(BaseSettings):
    """bankcore ledger engine configuration"""
    
    # Storage configuration
    storage_backend: str = "sqlite"  # memory or sqlite
    sqlite_path: str = "bankcore.db"
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    
    # Ledger configuration
    balance_cache_ttl_hours: int = 24  # Staleness window for cached balances
    
    # Business rules configuration
    default_interest_rate_percent: str = "0"  # Seeds SystemConfig on first use
    allow_new_registrations: bool = True
    house_account_id: Optional[str] = None  # Explicit house account reference
    withdrawal_retention_days: int = 30  # Age before decided tasks are archived
    
    # Audit configuration
    enable_audit_logging: bool = True
    audit_query_default_limit: int = 100
    
    # Notification configuration
    notification_webhook_url: Optional[str] = None  # None = log only
    notification_timeout: float = 5.0
    
    class Config:
        env_prefix = "BANKCORE_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = BankcoreConfig()


def get_config() -> BankcoreConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> BankcoreConfig:
    """Reload configuration from environment"""
    global config
    config = BankcoreConfig()
    return config
