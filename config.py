"""
Configuration management module for the book rental escrow service.

This module handles loading and validating environment variables,
providing a centralized Config class for all application settings.
Values are read from the process environment after an optional .env
file has been loaded.
"""

import os
from decimal import Decimal, InvalidOperation
from typing import Optional, List
from dotenv import load_dotenv


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


class Config:
    """
    Configuration class that loads and validates all application settings.

    All configuration values are validated on initialization. Nothing is
    strictly required in development; production additionally requires
    the encryption keys.

    Attributes:
        app_env: Either 'development', 'test' or 'production'
        database_url: asyncpg DSN for the escrow ledger (optional)
        currency: The single settlement currency
        escrow_window_hours: Hours before an unconfirmed hold expires
        fraud_daily_limit: Daily spend cap used by the risk scorer
        auto_refund_threshold: Largest amount refunded without review
        master_key_hex: Hex encoded AES-256 master key (optional in dev)
        hmac_key_hex: Hex encoded HMAC signing key (optional in dev)
    """

    def __init__(self, env_file: Optional[str] = None):
        """
        Initialize configuration by loading environment variables.

        Args:
            env_file: Optional path to .env file. If not provided, uses default .env

        Raises:
            ConfigError: If configuration is invalid
        """
        # Load environment variables
        if env_file:
            load_dotenv(env_file)
        else:
            load_dotenv()

        # Application Settings
        self.app_env: str = os.getenv('APP_ENV', 'development').lower()
        self.app_name: str = os.getenv('APP_NAME', 'BOOK_RENTAL_ESCROW')
        self.app_version: str = os.getenv('APP_VERSION', '1.0.0')

        # Logging Configuration
        self.log_level: str = os.getenv('LOG_LEVEL', 'INFO')
        self.log_format: str = os.getenv('LOG_FORMAT', 'text')
        self.log_file: str = os.getenv('LOG_FILE', 'logs/escrow.log')
        self.log_max_size: int = self._get_int('LOG_MAX_SIZE', 10485760)  # 10MB
        self.log_backup_count: int = self._get_int('LOG_BACKUP_COUNT', 5)

        # Database Configuration (Optional)
        self.database_url: Optional[str] = os.getenv('DATABASE_URL')
        self.db_pool_min_size: int = self._get_int('DB_POOL_MIN_SIZE', 2)
        self.db_pool_max_size: int = self._get_int('DB_POOL_MAX_SIZE', 10)

        # Escrow Settings
        self.currency: str = os.getenv('ESCROW_CURRENCY', 'USD').upper()
        self.escrow_window_hours: int = self._get_int('ESCROW_WINDOW_HOURS', 24)
        self.amount_epsilon: Decimal = self._get_decimal('AMOUNT_EPSILON', '0.01')
        self.damage_deduction_cap: Decimal = self._get_decimal('DAMAGE_DEDUCTION_CAP', '50')
        self.platform_fee_refund_share: Decimal = self._get_decimal('PLATFORM_FEE_REFUND_SHARE', '0.5')

        # Fraud Detection
        self.fraud_daily_limit: Decimal = self._get_decimal('FRAUD_DAILY_LIMIT', '1000')
        self.fraud_single_transaction_limit: Decimal = self._get_decimal(
            'FRAUD_SINGLE_TRANSACTION_LIMIT', '500'
        )
        self.fraud_round_amount_threshold: Decimal = self._get_decimal(
            'FRAUD_ROUND_AMOUNT_THRESHOLD', '1000'
        )
        self.fraud_hourly_velocity_limit: int = self._get_int('FRAUD_HOURLY_VELOCITY_LIMIT', 5)
        self.fraud_daily_velocity_limit: int = self._get_int('FRAUD_DAILY_VELOCITY_LIMIT', 20)
        self.high_risk_countries: List[str] = [
            c.upper() for c in self._get_list('FRAUD_HIGH_RISK_COUNTRIES')
        ]
        self.blacklisted_ips: List[str] = self._get_list('BLACKLISTED_IPS')
        self.blacklisted_payment_methods: List[str] = self._get_list('BLACKLISTED_PAYMENT_METHODS')
        self.blacklist_service_url: Optional[str] = os.getenv('BLACKLIST_SERVICE_URL')
        self.blacklist_timeout: int = self._get_int('BLACKLIST_TIMEOUT', 5)

        # Timeout & Recovery
        self.timeout_sweep_interval_minutes: int = self._get_int('TIMEOUT_SWEEP_INTERVAL_MINUTES', 5)
        self.retry_sweep_interval_seconds: int = self._get_int('RETRY_SWEEP_INTERVAL_SECONDS', 60)
        self.escalation_interval_minutes: int = self._get_int('ESCALATION_INTERVAL_MINUTES', 15)
        self.auto_refund_threshold: Decimal = self._get_decimal('AUTO_REFUND_THRESHOLD', '100')
        self.escalation_manual_hours: int = self._get_int('ESCALATION_MANUAL_HOURS', 24)
        self.escalation_admin_hours: int = self._get_int('ESCALATION_ADMIN_HOURS', 72)
        self.expiry_warning_hours: int = self._get_int('EXPIRY_WARNING_HOURS', 2)
        self.timeout_retention_days: int = self._get_int('TIMEOUT_RETENTION_DAYS', 30)
        self.max_refund_attempts: int = self._get_int('MAX_REFUND_ATTEMPTS', 3)

        # Encryption
        self.master_key_hex: Optional[str] = os.getenv('ESCROW_MASTER_KEY')
        self.hmac_key_hex: Optional[str] = os.getenv('ESCROW_HMAC_KEY')
        self.payment_method_ttl_hours: int = self._get_int('PAYMENT_METHOD_TTL_HOURS', 24)
        self.banking_details_ttl_hours: int = self._get_int('BANKING_DETAILS_TTL_HOURS', 168)

        # Telegram admin alerts (Optional)
        self.telegram_bot_token: Optional[str] = os.getenv('TELEGRAM_BOT_TOKEN')
        self.admin_chat_id: Optional[str] = os.getenv('ADMIN_CHAT_ID')

        # Validate configuration
        self._validate_config()

    def _get_int(self, key: str, default: int) -> int:
        value = os.getenv(key)
        if value is None or value == '':
            return default
        try:
            return int(value)
        except ValueError:
            raise ConfigError(f"{key} must be an integer, got '{value}'")

    def _get_decimal(self, key: str, default: str) -> Decimal:
        value = os.getenv(key) or default
        try:
            return Decimal(value)
        except InvalidOperation:
            raise ConfigError(f"{key} must be a number, got '{value}'")

    def _get_list(self, key: str) -> List[str]:
        """Parse a comma separated environment variable into a list."""
        value = os.getenv(key, '')
        return [item.strip() for item in value.split(',') if item.strip()]

    def _validate_config(self) -> None:
        """
        Validate configuration values.

        Raises:
            ConfigError: If any configuration value is invalid
        """
        valid_envs = ['development', 'test', 'production']
        if self.app_env not in valid_envs:
            raise ConfigError(f"APP_ENV must be one of {valid_envs}, got '{self.app_env}'")

        # Validate log level
        valid_log_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if self.log_level.upper() not in valid_log_levels:
            raise ConfigError(
                f"LOG_LEVEL must be one of {valid_log_levels}, got '{self.log_level}'"
            )

        if self.log_format not in ('text', 'json'):
            raise ConfigError(f"LOG_FORMAT must be 'text' or 'json', got '{self.log_format}'")

        if self.escrow_window_hours < 1:
            raise ConfigError(
                f"ESCROW_WINDOW_HOURS must be at least 1, got {self.escrow_window_hours}"
            )

        if self.amount_epsilon < 0:
            raise ConfigError(f"AMOUNT_EPSILON must not be negative, got {self.amount_epsilon}")

        if not Decimal('0') <= self.platform_fee_refund_share <= Decimal('1'):
            raise ConfigError(
                f"PLATFORM_FEE_REFUND_SHARE must be between 0 and 1, "
                f"got {self.platform_fee_refund_share}"
            )

        if self.escalation_admin_hours <= self.escalation_manual_hours:
            raise ConfigError(
                f"ESCALATION_ADMIN_HOURS ({self.escalation_admin_hours}) must be greater than "
                f"ESCALATION_MANUAL_HOURS ({self.escalation_manual_hours})"
            )

        if self.db_pool_max_size < self.db_pool_min_size:
            raise ConfigError(
                f"DB_POOL_MAX_SIZE ({self.db_pool_max_size}) must not be less than "
                f"DB_POOL_MIN_SIZE ({self.db_pool_min_size})"
            )

        if self.is_production and not (self.master_key_hex and self.hmac_key_hex):
            raise ConfigError(
                "ESCROW_MASTER_KEY and ESCROW_HMAC_KEY are required in production"
            )

    @property
    def has_database_config(self) -> bool:
        """Check if a Postgres ledger is configured."""
        return bool(self.database_url)

    @property
    def has_telegram_config(self) -> bool:
        """Check if Telegram admin alerts are configured."""
        return bool(self.telegram_bot_token and self.admin_chat_id)

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == 'production'

    def __repr__(self) -> str:
        """String representation of Config (hiding sensitive data)."""
        return (
            f"Config(app_env={self.app_env}, "
            f"currency={self.currency}, "
            f"has_db={self.has_database_config}, "
            f"has_telegram={self.has_telegram_config})"
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
        >>> print(config.currency)
        USD
    """
    global _config_instance

    if _config_instance is None or reload:
        _config_instance = Config(env_file)

    return _config_instance
