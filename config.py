"""
Settings for the fashion marketplace escrow service.

Values come from the process environment, optionally seeded from a .env
file. Each one has a development default, so the service boots against the
in-memory store with no configuration at all; production only insists on a
real JWT secret.
"""

import os
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from dotenv import load_dotenv


DEFAULT_JWT_SECRET = 'change-me-in-production'

LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')
LOG_FORMATS = ('text', 'json')


class ConfigError(Exception):
    """A setting is missing or holds a value the service cannot use."""
    pass


def _env(key: str, default: Optional[str] = None) -> Optional[str]:
    return os.getenv(key, default)


def _env_flag(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None:
        return default
    return raw.strip().lower() in ('true', '1', 'yes', 'on')


def _env_int(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got '{raw}'")


def _env_decimal(key: str, default: str) -> Decimal:
    raw = os.getenv(key, default)
    try:
        return Decimal(raw)
    except InvalidOperation:
        raise ConfigError(f"{key} must be a number, got '{raw}'")


def _env_list(key: str, default: str) -> List[str]:
    return [part.strip().upper() for part in os.getenv(key, default).split(',') if part.strip()]


class Config:
    """
    Validated service settings.

    Attributes:
        database_url: PostgreSQL DSN; unset means the in-memory store
        jwt_secret: HMAC secret for identity tokens
        supported_currencies: Codes accepted on new orders and items
        max_order_amount: Upper bound on a single order
        payment_tolerance: Shortfall accepted when recording a payment
        require_designer_kyc: Designers need approved KYC before selling
        auto_release_days: Days after shipping before funds release on their own
        ship_deadline_days: Days a paid order may sit unshipped
        payment_timeout_hours: Hours an unpaid order stays open
        telegram_bot_token: Bot token for Telegram delivery (optional)
        admin_chat_id: Telegram chat for admin alerts (optional)
        notification_webhook_url: Endpoint receiving notification JSON (optional)
    """

    def __init__(self, env_file: Optional[str] = None):
        """
        Read and validate every setting.

        Args:
            env_file: .env file to load first; the working directory's .env otherwise

        Raises:
            ConfigError: On the first invalid value
        """
        load_dotenv(env_file)

        # Service
        self.app_env: str = _env('APP_ENV', 'development')
        self.app_debug: bool = _env_flag('APP_DEBUG', False)
        self.app_name: str = _env('APP_NAME', 'FASHION_ESCROW')
        self.app_version: str = _env('APP_VERSION', '1.0.0')
        self.api_host: str = _env('API_HOST', '0.0.0.0')
        self.api_port: int = _env_int('API_PORT', 8000)

        # Storage
        self.database_url: Optional[str] = _env('DATABASE_URL')
        self.db_pool_min_size: int = _env_int('DB_POOL_MIN_SIZE', 2)
        self.db_pool_max_size: int = _env_int('DB_POOL_MAX_SIZE', 10)

        # Identity tokens
        self.jwt_secret: str = _env('JWT_SECRET', DEFAULT_JWT_SECRET)
        self.jwt_algorithm: str = _env('JWT_ALGORITHM', 'HS256')
        self.jwt_audience: Optional[str] = _env('JWT_AUDIENCE', 'authenticated') or None

        # Orders and escrow
        self.supported_currencies: List[str] = _env_list('SUPPORTED_CURRENCIES', 'USD,SOL,USDC')
        self.max_order_amount: Decimal = _env_decimal('MAX_ORDER_AMOUNT', '100000')
        self.payment_tolerance: Decimal = _env_decimal('PAYMENT_TOLERANCE', '0')
        self.require_designer_kyc: bool = _env_flag('REQUIRE_DESIGNER_KYC', False)

        # Deadlines swept by the scheduler
        self.auto_release_days: int = _env_int('AUTO_RELEASE_DAYS', 7)
        self.ship_deadline_days: int = _env_int('SHIP_DEADLINE_DAYS', 3)
        self.payment_timeout_hours: int = _env_int('PAYMENT_TIMEOUT_HOURS', 24)
        self.automation_enabled: bool = _env_flag('AUTOMATION_ENABLED', True)
        self.automation_interval_minutes: int = _env_int('AUTOMATION_INTERVAL_MINUTES', 60)

        # Notification channels
        self.enable_notifications: bool = _env_flag('ENABLE_NOTIFICATIONS', True)
        self.notification_queue_size: int = _env_int('NOTIFICATION_QUEUE_SIZE', 1000)
        self.notification_timeout: int = _env_int('NOTIFICATION_TIMEOUT', 10)
        self.telegram_bot_token: Optional[str] = _env('TELEGRAM_BOT_TOKEN')
        self.admin_chat_id: Optional[str] = _env('ADMIN_CHAT_ID')
        self.notification_webhook_url: Optional[str] = _env('NOTIFICATION_WEBHOOK_URL')

        # Logs
        self.log_level: str = _env('LOG_LEVEL', 'INFO')
        self.log_format: str = _env('LOG_FORMAT', 'text')
        self.log_file: Optional[str] = _env('LOG_FILE') or None
        self.log_max_size: int = _env_int('LOG_MAX_SIZE', 10 * 1024 * 1024)
        self.log_backup_count: int = _env_int('LOG_BACKUP_COUNT', 5)

        self._check_orders()
        self._check_runtime()

    def _check_orders(self) -> None:
        if not self.supported_currencies:
            raise ConfigError("SUPPORTED_CURRENCIES must list at least one currency")

        bad_codes = [c for c in self.supported_currencies if not (c.isalpha() and 3 <= len(c) <= 5)]
        if bad_codes:
            raise ConfigError(f"Invalid currency code in SUPPORTED_CURRENCIES: '{bad_codes[0]}'")

        if self.max_order_amount <= 0:
            raise ConfigError(f"MAX_ORDER_AMOUNT must be positive, got {self.max_order_amount}")

        if self.payment_tolerance < 0:
            raise ConfigError(f"PAYMENT_TOLERANCE cannot be negative, got {self.payment_tolerance}")

        positive = {
            'AUTO_RELEASE_DAYS': self.auto_release_days,
            'SHIP_DEADLINE_DAYS': self.ship_deadline_days,
            'PAYMENT_TIMEOUT_HOURS': self.payment_timeout_hours,
            'AUTOMATION_INTERVAL_MINUTES': self.automation_interval_minutes,
            'NOTIFICATION_QUEUE_SIZE': self.notification_queue_size,
        }
        for key, value in positive.items():
            if value < 1:
                raise ConfigError(f"{key} must be at least 1, got {value}")

    def _check_runtime(self) -> None:
        if self.db_pool_min_size > self.db_pool_max_size:
            raise ConfigError(
                f"DB_POOL_MIN_SIZE ({self.db_pool_min_size}) exceeds "
                f"DB_POOL_MAX_SIZE ({self.db_pool_max_size})"
            )

        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got '{self.log_level}'")

        if self.log_format not in LOG_FORMATS:
            raise ConfigError(f"LOG_FORMAT must be 'text' or 'json', got '{self.log_format}'")

        # Telegram group chats have negative ids
        if self.admin_chat_id and not self.admin_chat_id.lstrip('-').isdigit():
            raise ConfigError(f"ADMIN_CHAT_ID must be a numeric chat id, got '{self.admin_chat_id}'")

        if not 0 < self.api_port < 65536:
            raise ConfigError(f"API_PORT out of range: {self.api_port}")

        if self.is_production and self.jwt_secret == DEFAULT_JWT_SECRET:
            raise ConfigError("JWT_SECRET must be set in production")

    @property
    def has_database_config(self) -> bool:
        return bool(self.database_url)

    @property
    def has_telegram_config(self) -> bool:
        return bool(self.telegram_bot_token)

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == 'production'

    def __repr__(self) -> str:
        # Secrets and the DSN stay out of logs
        return (
            f"Config(env={self.app_env}, "
            f"currencies={','.join(self.supported_currencies)}, "
            f"store={'postgres' if self.has_database_config else 'memory'}, "
            f"telegram={self.has_telegram_config})"
        )


_config: Optional[Config] = None


def get_config(env_file: Optional[str] = None, reload: bool = False) -> Config:
    """
    Return the process-wide settings, loading them on first use.

    Services accept an explicit Config; this is only their fallback.
    """
    global _config

    if _config is None or reload:
        _config = Config(env_file)

    return _config
