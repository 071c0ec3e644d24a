"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class AccrualConfig(BaseSettings):
    """Deposit accrual batch configuration"""
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr
    
    # Failure handling
    isolate_account_failures: bool = True  # Quarantine the account and carry on
    
    # Diagnostics
    state_dump_enabled: bool = False
    state_dump_account_ids: Optional[List[int]] = None  # None dumps every account
    
    # Business rules
    enforce_period_non_overlap: bool = True
    
    class Config:
        env_prefix = "ACCRUAL_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = AccrualConfig()


def get_config() -> AccrualConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> AccrualConfig:
    """Reload configuration from environment"""
    global config
    config = AccrualConfig()
    return config
