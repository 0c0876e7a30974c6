"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class LedgerConfig(BaseSettings):
    """Ledger engine configuration"""
    
    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )
    
    # Database configuration
    database_url: str = "sqlite:///ledger.db"  # Default SQLite
    database_pool_min: int = 1
    database_pool_max: int = 20
    sqlite_busy_timeout_seconds: float = 30.0
    
    # Contention configuration (PostgreSQL, 0 = wait forever)
    lock_timeout_ms: int = 5000
    statement_timeout_ms: int = 0
    
    # Transfer preconditions, both left to the caller by default
    enforce_sufficient_funds: bool = False
    enforce_currency_match: bool = False
    
    # Query configuration
    default_page_size: int = 50
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Migration configuration
    auto_migrate: bool = True


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
