"""
Configuration management for the retention engine.

This module provides centralized configuration with validation using Pydantic.
All configuration values are loaded from environment variables with sensible defaults.
"""

from typing import Optional, Literal
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseConfig(BaseSettings):
    """Database connection and pool configuration."""

    model_config = SettingsConfigDict(env_prefix='DB_', case_sensitive=False)

    host: str = Field(default='localhost', description='Database host')
    port: int = Field(default=5432, description='Database port')
    name: str = Field(default='app_db', alias='POSTGRES_DB', description='Database name')
    user: str = Field(default='app_user', alias='POSTGRES_USER', description='Database user')
    password: str = Field(default='app_password', alias='POSTGRES_PASSWORD', description='Database password')

    # Connection pool settings
    pool_size: int = Field(default=5, description='Connection pool size')
    connect_timeout: int = Field(default=10, description='Connect timeout in seconds')
    statement_timeout_ms: int = Field(
        default=0,
        description='Per-statement timeout inside retention transactions (0 = server default)'
    )

    @field_validator('pool_size', 'connect_timeout')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate pool size and timeouts are positive."""
        if v <= 0:
            raise ValueError('Value must be positive')
        return v

    @property
    def connection_string(self) -> str:
        """Generate PostgreSQL connection string."""
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.name}"


class RetentionConfig(BaseSettings):
    """
    Retention thresholds per collection.

    Any knob may be set to ``none`` to disable that rule for its collection.
    A collection with both rules disabled is rejected when policies load.
    """

    model_config = SettingsConfigDict(
        env_prefix='CLEANUP_',
        case_sensitive=False,
        env_parse_none_str='none',
    )

    notification_ttl_days: Optional[int] = Field(
        default=90,
        description='Age after which read notifications are deleted'
    )
    log_ttl_days: Optional[int] = Field(
        default=30,
        description='Age after which integration log entries are deleted'
    )
    max_notifications: Optional[int] = Field(
        default=500,
        description='Notifications retained per user, newest first'
    )
    max_logs: Optional[int] = Field(
        default=1000,
        description='Integration log entries retained per company, newest first'
    )
    interval_hours: float = Field(default=24, description='Hours between scheduled runs')
    isolation_level: Literal['read_committed', 'repeatable_read', 'serializable'] = Field(
        default='repeatable_read',
        description='Transaction isolation level for a retention run'
    )
    use_advisory_lock: bool = Field(
        default=True,
        description='Take a transaction-scoped advisory lock so only one instance runs at a time'
    )

    @field_validator('interval_hours')
    @classmethod
    def validate_interval(cls, v: float) -> float:
        """Validate the run interval is positive."""
        if v <= 0:
            raise ValueError('interval_hours must be positive')
        return v

    @property
    def interval_seconds(self) -> float:
        return self.interval_hours * 3600


class MaintenanceConfig(BaseSettings):
    """Background scheduler toggles."""

    model_config = SettingsConfigDict(env_prefix='RETENTION_MAINTENANCE_', case_sensitive=False)

    enabled: bool = Field(default=True, description='Run retention on a timer')
    run_on_start: bool = Field(default=True, description='Fire one run immediately at startup')


class APIConfig(BaseSettings):
    """Admin API server configuration."""

    model_config = SettingsConfigDict(env_prefix='API_', case_sensitive=False)

    host: str = Field(default='0.0.0.0', description='API host')
    port: int = Field(default=8000, description='API port')
    log_level: Literal['debug', 'info', 'warning', 'error', 'critical'] = Field(
        default='info',
        description='Logging level'
    )
    require_auth: bool = Field(default=False, description='Require X-API-Key on admin endpoints')
    admin_key_hash: Optional[str] = Field(
        default=None,
        description='SHA-256 hex digest of the admin API key'
    )


class AppConfig(BaseSettings):
    """Main application configuration."""

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=False,
        extra='ignore'
    )

    # Environment
    environment: Literal['development', 'staging', 'production'] = Field(
        default='development',
        description='Application environment'
    )
    debug: bool = Field(default=False, description='Debug mode')

    # Sub-configurations
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    maintenance: MaintenanceConfig = Field(default_factory=MaintenanceConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    @classmethod
    def load(cls) -> 'AppConfig':
        """Load configuration from environment."""
        return cls(
            database=DatabaseConfig(),
            retention=RetentionConfig(),
            maintenance=MaintenanceConfig(),
            api=APIConfig(),
        )

    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == 'production'

    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment == 'development'


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get or create global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.load()
    return _config


def reload_config() -> AppConfig:
    """Reload configuration from environment."""
    global _config
    _config = AppConfig.load()
    return _config
