"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import List


class RentalConfig(BaseSettings):
    """Rental core configuration"""

    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    database_path: str = "rental_core.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Money
    default_currency: str = "ZAR"

    # Schedule generation
    default_due_date_policy: str = "first_day"  # first_day or last_day
    include_deposit_by_default: bool = True

    # Default business rules for leases created without explicit rules
    default_late_fee_amount: str = "20.00"  # per day
    default_late_fee_start_day: int = 4
    default_grace_period_days: int = 0
    default_child_surcharge: str = "10.00"
    default_payment_methods: List[str] = ["cash", "eft", "card"]

    # Payment capture date policy
    allow_standard_user_past_payments: bool = True
    require_admin_approval_for_past_payments: bool = True
    max_past_payment_days: int = 30

    # Daily scan
    mark_overdue_during_scan: bool = True

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "RENTAL_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = RentalConfig()


def get_config() -> RentalConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> RentalConfig:
    """Reload configuration from environment"""
    global config
    config = RentalConfig()
    return config
