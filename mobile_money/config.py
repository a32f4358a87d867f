"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class MobileMoneyConfig(BaseSettings):
    """Mobile money ledger configuration"""

    model_config = SettingsConfigDict(
        env_prefix="MOBILE_MONEY_",
        env_file=".env",
        case_sensitive=False,
    )

    # Database configuration
    database_url: str = "sqlite:///mobile_money.db"  # or "memory://", "postgresql://..."

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 5000
    cors_origins: List[str] = ["http://localhost:5173"]

    # Security configuration
    jwt_secret: str = "change-me-in-production"
    jwt_expiry_hours: int = 24
    jwt_algorithm: str = "HS256"
    pin_min_length: int = 4

    # Optional admin account created at startup when all three are set
    admin_name: str = "Administrator"
    admin_mobile_number: Optional[str] = None
    admin_email: Optional[str] = None
    admin_pin: Optional[str] = None

    # Logging configuration
    log_level: str = "INFO"
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    customer_seed_balance: Decimal = Decimal("40")
    agent_seed_balance: Decimal = Decimal("10000")
    history_limit: int = 10
    pending_list_limit: int = 20
    settle_timeout_seconds: int = 30

    # Feature flags
    enable_audit_logging: bool = True


# Global configuration instance
config = MobileMoneyConfig()


def get_config() -> MobileMoneyConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> MobileMoneyConfig:
    """Reload configuration from environment"""
    global config
    config = MobileMoneyConfig()
    return config
