"""Tests for environment-driven configuration."""

from decimal import Decimal

import pytest

from config import Config, ConfigError, DEFAULT_JWT_SECRET

NO_ENV_FILE = '/nonexistent/.env'


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ('APP_ENV', 'DATABASE_URL', 'JWT_SECRET', 'SUPPORTED_CURRENCIES',
                'MAX_ORDER_AMOUNT', 'PAYMENT_TOLERANCE', 'AUTO_RELEASE_DAYS',
                'ADMIN_CHAT_ID', 'LOG_LEVEL', 'LOG_FORMAT', 'API_PORT',
                'DB_POOL_MIN_SIZE', 'DB_POOL_MAX_SIZE', 'TELEGRAM_BOT_TOKEN'):
        monkeypatch.delenv(key, raising=False)


def test_defaults():
    config = Config(env_file=NO_ENV_FILE)

    assert config.supported_currencies == ['USD', 'SOL', 'USDC']
    assert config.max_order_amount == Decimal('100000')
    assert config.auto_release_days == 7
    assert config.ship_deadline_days == 3
    assert config.payment_timeout_hours == 24
    assert not config.has_database_config
    assert not config.has_telegram_config
    assert not config.is_production


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv('SUPPORTED_CURRENCIES', 'usd, kes')
    monkeypatch.setenv('MAX_ORDER_AMOUNT', '2500.50')
    monkeypatch.setenv('DATABASE_URL', 'postgresql://localhost/escrow')

    config = Config(env_file=NO_ENV_FILE)

    assert config.supported_currencies == ['USD', 'KES']
    assert config.max_order_amount == Decimal('2500.50')
    assert config.has_database_config


@pytest.mark.parametrize("key, value", [
    ('AUTO_RELEASE_DAYS', 'seven'),
    ('AUTO_RELEASE_DAYS', '0'),
    ('MAX_ORDER_AMOUNT', '-1'),
    ('MAX_ORDER_AMOUNT', 'lots'),
    ('PAYMENT_TOLERANCE', '-0.01'),
    ('SUPPORTED_CURRENCIES', 'US$'),
    ('ADMIN_CHAT_ID', 'admins'),
    ('LOG_LEVEL', 'VERBOSE'),
    ('LOG_FORMAT', 'xml'),
    ('API_PORT', '70000'),
    ('DB_POOL_MIN_SIZE', '20'),
])
def test_invalid_values(monkeypatch, key, value):
    monkeypatch.setenv(key, value)
    with pytest.raises(ConfigError):
        Config(env_file=NO_ENV_FILE)


def test_production_requires_jwt_secret(monkeypatch):
    monkeypatch.setenv('APP_ENV', 'production')
    with pytest.raises(ConfigError):
        Config(env_file=NO_ENV_FILE)

    monkeypatch.setenv('JWT_SECRET', 'a-real-secret')
    config = Config(env_file=NO_ENV_FILE)
    assert config.jwt_secret != DEFAULT_JWT_SECRET


def test_repr_hides_secrets(monkeypatch):
    monkeypatch.setenv('JWT_SECRET', 'super-secret-value')
    assert 'super-secret-value' not in repr(Config(env_file=NO_ENV_FILE))
