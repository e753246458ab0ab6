"""
Configuration management module for the escrow service.

This module handles loading and validating environment variables,
providing a centralized Config class for all application settings.
"""

import os
from typing import Optional
from dotenv import load_dotenv


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


def _env_bool(key: str, default: str) -> bool:
    return os.getenv(key, default).lower() in ('true', '1', 'yes')


def _env_int(key: str, default: str) -> int:
    value = os.getenv(key, default)
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got '{value}'")


class Config:
    """
    Configuration class that loads and validates all application settings.

    All required configuration values are validated on initialization.

    Attributes:
        telegram_bot_token: Telegram bot API token (notifications and Mini App auth)
        admin_chat_id: Chat ID receiving dispute and stuck-transfer alerts
        store_backend: Either 'postgres' or 'memory'
        database_url: PostgreSQL connection URL
        deposit_window_hours: Hours a seller has to act on a deposit
        holding_account: Account custodying funds between deposit and payout
        transfer_api_url: Transfer provider API root (unset = simulated transfers)
        release_on_transfer_failure: Mark escrows released even if the release transfer failed
    """

    VALID_LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
    VALID_STORE_BACKENDS = ['postgres', 'memory']

    def __init__(self, env_file: Optional[str] = None):
        """
        Initialize configuration by loading environment variables.

        Args:
            env_file: Optional path to .env file. If not provided, uses default .env

        Raises:
            ConfigError: If required configuration is missing or invalid
        """
        if env_file:
            load_dotenv(env_file)
        else:
            load_dotenv()

        # Telegram Configuration
        self.telegram_bot_token: str = self._get_required_env('TELEGRAM_BOT_TOKEN')
        self.admin_chat_id: Optional[str] = os.getenv('ADMIN_CHAT_ID') or None

        # Storage
        self.store_backend: str = os.getenv('STORE_BACKEND', 'postgres').lower()
        self.database_url: Optional[str] = os.getenv('DATABASE_URL') or None
        self.db_pool_min_size: int = _env_int('DB_POOL_MIN_SIZE', '2')
        self.db_pool_max_size: int = _env_int('DB_POOL_MAX_SIZE', '10')

        # Escrow Policy
        self.deposit_window_hours: int = _env_int('DEPOSIT_WINDOW_HOURS', '48')
        self.holding_account: str = os.getenv('HOLDING_ACCOUNT', 'escrow-holding')
        self.release_on_transfer_failure: bool = _env_bool('RELEASE_ON_TRANSFER_FAILURE', 'False')

        # Value Transfers
        self.transfer_api_url: Optional[str] = os.getenv('TRANSFER_API_URL') or None
        self.transfer_api_key: Optional[str] = os.getenv('TRANSFER_API_KEY') or None
        self.transfer_timeout: int = _env_int('TRANSFER_TIMEOUT', '30')
        self.transfer_webhook_secret: Optional[str] = os.getenv('TRANSFER_WEBHOOK_SECRET') or None

        # Currency
        self.currency: str = os.getenv('CURRENCY', 'USD')
        self.currency_decimals: int = _env_int('CURRENCY_DECIMALS', '2')

        # Notifications
        self.enable_notifications: bool = _env_bool('ENABLE_NOTIFICATIONS', 'True')

        # Background Jobs
        self.sweep_interval_minutes: int = _env_int('SWEEP_INTERVAL_MINUTES', '15')
        self.reconcile_interval_minutes: int = _env_int('RECONCILE_INTERVAL_MINUTES', '10')
        self.stale_claim_minutes: int = _env_int('STALE_CLAIM_MINUTES', '5')

        # Authentication
        self.auth_max_age_seconds: int = _env_int('AUTH_MAX_AGE_SECONDS', '86400')

        # API Configuration
        self.api_host: str = os.getenv('API_HOST', '0.0.0.0')
        self.api_port: int = _env_int('API_PORT', '8000')

        # Application Settings
        self.app_env: str = os.getenv('APP_ENV', 'development')
        self.app_name: str = os.getenv('APP_NAME', 'P2P_ESCROW')
        self.app_version: str = os.getenv('APP_VERSION', '1.0.0')

        # Logging Configuration
        self.log_level: str = os.getenv('LOG_LEVEL', 'INFO')
        self.log_format: str = os.getenv('LOG_FORMAT', 'text')
        self.log_file: Optional[str] = os.getenv('LOG_FILE', 'logs/escrow.log') or None
        self.log_max_size: int = _env_int('LOG_MAX_SIZE', '10485760')  # 10MB
        self.log_backup_count: int = _env_int('LOG_BACKUP_COUNT', '5')

        self._validate_config()

    def _get_required_env(self, key: str) -> str:
        """
        Get a required environment variable.

        Args:
            key: Environment variable name

        Returns:
            Value of the environment variable

        Raises:
            ConfigError: If the environment variable is not set
        """
        value = os.getenv(key)
        if not value:
            raise ConfigError(f"Required environment variable '{key}' is not set")
        return value

    def _validate_config(self) -> None:
        """
        Validate configuration values.

        Raises:
            ConfigError: If any configuration value is invalid
        """
        if self.store_backend not in self.VALID_STORE_BACKENDS:
            raise ConfigError(
                f"STORE_BACKEND must be one of {self.VALID_STORE_BACKENDS}, "
                f"got '{self.store_backend}'"
            )

        if self.store_backend == 'postgres' and not self.database_url:
            raise ConfigError("DATABASE_URL is required when STORE_BACKEND is 'postgres'")

        for key, value in (
            ('DEPOSIT_WINDOW_HOURS', self.deposit_window_hours),
            ('TRANSFER_TIMEOUT', self.transfer_timeout),
            ('SWEEP_INTERVAL_MINUTES', self.sweep_interval_minutes),
            ('RECONCILE_INTERVAL_MINUTES', self.reconcile_interval_minutes),
            ('STALE_CLAIM_MINUTES', self.stale_claim_minutes),
            ('AUTH_MAX_AGE_SECONDS', self.auth_max_age_seconds),
        ):
            if value < 1:
                raise ConfigError(f"{key} must be at least 1, got {value}")

        if not 0 <= self.currency_decimals <= 18:
            raise ConfigError(
                f"CURRENCY_DECIMALS must be between 0 and 18, got {self.currency_decimals}"
            )

        if self.log_level.upper() not in self.VALID_LOG_LEVELS:
            raise ConfigError(
                f"LOG_LEVEL must be one of {self.VALID_LOG_LEVELS}, got '{self.log_level}'"
            )

        if self.admin_chat_id and not self.admin_chat_id.lstrip('-').isdigit():
            raise ConfigError(
                f"ADMIN_CHAT_ID must be numeric (can start with -), "
                f"got '{self.admin_chat_id}'"
            )

        if not 1 <= self.api_port <= 65535:
            raise ConfigError(f"API_PORT must be between 1 and 65535, got {self.api_port}")

        if self.db_pool_min_size < 1 or self.db_pool_max_size < self.db_pool_min_size:
            raise ConfigError(
                f"DB_POOL_MAX_SIZE ({self.db_pool_max_size}) must be at least "
                f"DB_POOL_MIN_SIZE ({self.db_pool_min_size}) and both positive"
            )

    @property
    def uses_simulated_transfers(self) -> bool:
        """Check if transfers are simulated in-process."""
        return not self.transfer_api_url

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == 'production'

    def __repr__(self) -> str:
        """String representation of Config (hiding sensitive data)."""
        return (
            f"Config(app_env={self.app_env}, "
            f"store={self.store_backend}, "
            f"deposit_window_hours={self.deposit_window_hours}, "
            f"simulated_transfers={self.uses_simulated_transfers})"
        )


# Singleton instance for easy access
_config_instance: Optional[Config] = None


def get_config(env_file: Optional[str] = None, reload: bool = False) -> Config:
    """
    Get or create the global Config instance.

    Args:
        env_file: Optional path to .env file
        reload: If True, force reload configuration

    Returns:
        Config instance

    Raises:
        ConfigError: If configuration is invalid

    Example:
        >>> config = get_config()
        >>> print(config.deposit_window_hours)
        48
    """
    global _config_instance

    if _config_instance is None or reload:
        _config_instance = Config(env_file)

    return _config_instance
