"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Ledger engine configuration"""

    # Storage configuration
    database_url: str = "memory://"  # or sqlite:///ledger.db

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Concurrency configuration
    lock_timeout_seconds: float = 2.0  # Bounded wait on a per-account lock

    # Account numbering
    account_number_prefix: str = "BA"
    account_number_max_attempts: int = 10

    # Account defaults
    default_interest_rate: str = "0.5"
    default_overdraft_limit: str = "0.00"

    # Fee schedule
    international_fee_rate: str = "0.03"
    international_fee_cap: str = "25.00"
    withdrawal_fee: str = "2.50"
    payment_fee: str = "1.50"

    # Rewards
    reward_rate: str = "0.01"  # Points per major currency unit settled

    # Currency conversion: "fallback" uses rate 1 for unknown pairs, "fail_closed" rejects
    conversion_policy: str = "fallback"

    # Queries
    recent_transactions_limit: int = 10
    overview_transactions_limit: int = 5

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "LEDGER_"
        env_file = ".env"
        case_sensitive = False


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
