"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class NivalusConfig(BaseSettings):
    """Nivalus bank backend configuration"""
    
    # Database configuration
    database_url: str = "memory://"  # memory://, sqlite:///path.db or postgresql://...
    lock_timeout_seconds: float = 5.0
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 5000
    cors_origins: str = "*"  # Comma separated
    
    # Security configuration
    jwt_secret: str = "change-me-in-production"
    jwt_expiry_hours: int = 24 * 30  # 30 days
    jwt_algorithm: str = "HS256"
    password_min_length: int = 8
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    
    # Business rules configuration
    transfer_max_retries: int = 3
    recent_transactions_limit: int = 5
    
    # Deployment provisioning (run.py only)
    bootstrap_admin_username: Optional[str] = None
    bootstrap_admin_password: Optional[str] = None
    bootstrap_admin_email: Optional[str] = None
    bootstrap_admin_pin: Optional[str] = None
    
    class Config:
        env_prefix = "NIVALUS_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = NivalusConfig()


def get_config() -> NivalusConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> NivalusConfig:
    """Reload configuration from environment"""
    global config
    config = NivalusConfig()
    return config
