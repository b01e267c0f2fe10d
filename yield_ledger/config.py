"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class YieldLedgerConfig(BaseSettings):
    """Yield ledger configuration"""
    
    # Storage configuration
    database_url: str = "memory"  # "memory" or a SQLite file path
    
    # Accrual configuration
    scale_factor: int = 10 ** 18  # Fixed-point multiplier for proportional splits
    
    # Access control
    admin_accounts: List[str] = []  # JSON list in the environment, e.g. ["0xadmin"]
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8091
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr
    
    # Feature flags
    enable_audit_logging: bool = True
    enable_events: bool = True
    
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
