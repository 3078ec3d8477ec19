"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LendingConfig(BaseSettings):
    """Gold lending system configuration"""

    # Database configuration
    database_url: str = "sqlite:///gold_lending.db"  # memory:// for in-memory storage

    # Runtime environment (development shows error details over HTTP)
    environment: str = "production"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8095

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Loan origination bounds
    min_principal_amount: str = "1000.00"
    max_principal_amount: str = "10000000.00"
    min_interest_rate: str = "0"
    max_interest_rate: str = "50"
    min_tenure_months: int = 1
    max_tenure_months: int = 60

    # Penalty defaults applied when a loan does not specify its own
    default_penalty_rate: str = "24"  # % per annum for PERCENTAGE
    default_penalty_type: str = "PERCENTAGE"  # PERCENTAGE or FIXED

    # Overdue escalation
    default_threshold_days: int = 90
    overdue_sweep_interval_seconds: int = 24 * 60 * 60
    enable_overdue_scheduler: bool = True
    run_sweep_on_startup: bool = False

    # Reconciliation: largest drift tolerated before a loan is reported
    reconciliation_tolerance: str = "0.00"

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "GOLDLEND_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LendingConfig()


def get_config() -> LendingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LendingConfig:
    """Reload configuration from environment"""
    global config
    config = LendingConfig()
    return config
