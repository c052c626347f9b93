"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class EngineConfig(BaseSettings):
    """Loan ledger engine configuration"""
    
    # Database configuration
    database_url: str = "sqlite:///loan_engine.db"  # memory:// for in-memory storage
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8091
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Day-count configuration
    reporting_timezone: str = "Asia/Riyadh"  # Timestamps are truncated to dates here
    default_interest_basis: str = "actual_365"
    
    # Business rules configuration
    payment_allocation_policy: str = "interest_first"  # interest_first or principal_first
    require_idempotency_keys: bool = False
    money_decimal_places: int = 2
    currency_code: str = "SAR"  # Display only
    
    # Revolving period thresholds (percent of max period)
    revolving_warning_threshold: float = 70.0
    revolving_critical_threshold: float = 90.0
    
    # Feature flags
    enable_audit_logging: bool = True
    
    class Config:
        env_prefix = "LOAN_ENGINE_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = EngineConfig()


def get_config() -> EngineConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> EngineConfig:
    """Reload configuration from environment"""
    global config
    config = EngineConfig()
    return config
