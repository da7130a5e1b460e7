"""Tests for settings loading and logging setup."""

import logging
from decimal import Decimal

import pytest

from settlement_engine.config import FeeSchedule, Settings, get_settings
from settlement_engine.logging_config import get_security_logger, setup_logging
from tests.conftest import make_settings

ENV_VARS = (
    "DATABASE_URL",
    "DEBUG",
    "DEFAULT_CURRENCY",
    "SUPPORTED_CURRENCIES",
    "PLATFORM_FEE_PERCENT",
    "PLATFORM_FIXED_FEE_CENTS",
    "TAX_PERCENT",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "STRIPE_CAPTURE_MANUALLY",
    "NUVEI_MERCHANT_ID",
    "WEBHOOK_TOLERANCE_SECONDS",
    "PROVIDER_MAX_ATTEMPTS",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    # Keep a developer's .env out of the picture
    monkeypatch.setattr("settlement_engine.config.load_dotenv", lambda *a, **k: False)
    get_settings.cache_clear()
    yield monkeypatch
    get_settings.cache_clear()


class TestSettings:
    """Environment-driven settings."""

    def test_defaults(self, clean_env):
        settings = Settings.from_env()

        assert settings.database_url.startswith("postgresql+psycopg://")
        assert settings.default_currency == "cad"
        assert settings.supported_currencies == ("cad", "usd")
        assert settings.webhook_tolerance_seconds == 300
        assert settings.fees == FeeSchedule()
        assert settings.stripe.secret_key == ""
        assert settings.debug is False

    def test_overrides(self, clean_env):
        clean_env.setenv("DATABASE_URL", "sqlite:///settle.db")
        clean_env.setenv("DEBUG", "true")
        clean_env.setenv("SUPPORTED_CURRENCIES", "USD, EUR")
        clean_env.setenv("DEFAULT_CURRENCY", "USD")
        clean_env.setenv("PLATFORM_FEE_PERCENT", "0.08")
        clean_env.setenv("PLATFORM_FIXED_FEE_CENTS", "0")
        clean_env.setenv("STRIPE_SECRET_KEY", "sk_test_1")
        clean_env.setenv("STRIPE_CAPTURE_MANUALLY", "true")
        clean_env.setenv("PROVIDER_MAX_ATTEMPTS", "5")

        settings = Settings.from_env()

        assert settings.database_url == "sqlite:///settle.db"
        assert settings.debug is True
        assert settings.supported_currencies == ("usd", "eur")
        assert settings.default_currency == "usd"
        assert settings.fees.fee_percent == Decimal("0.08")
        assert settings.fees.fixed_fee_minor_units == 0
        assert settings.stripe.capture_manually is True
        assert settings.provider_calls.max_attempts == 5

    def test_bad_decimal(self, clean_env):
        clean_env.setenv("TAX_PERCENT", "thirteen")
        with pytest.raises(ValueError, match="TAX_PERCENT"):
            Settings.from_env()

    def test_default_currency_must_be_supported(self, clean_env):
        clean_env.setenv("DEFAULT_CURRENCY", "gbp")
        with pytest.raises(ValueError, match="default_currency"):
            Settings.from_env()

    def test_tolerance_must_be_positive(self):
        with pytest.raises(ValueError):
            make_settings(webhook_tolerance_seconds=0)

    def test_negative_fee_rejected(self):
        with pytest.raises(ValueError):
            FeeSchedule(fee_percent=Decimal("-0.1"))

    def test_get_settings_is_cached(self, clean_env):
        assert get_settings() is get_settings()


class TestLogging:
    """Package logger setup."""

    @pytest.fixture
    def package_logger(self):
        logger = logging.getLogger("settlement_engine")
        saved = (logger.level, list(logger.handlers), logger.propagate)
        yield logger
        logger.setLevel(saved[0])
        logger.handlers = saved[1]
        logger.propagate = saved[2]

    def test_setup_is_idempotent(self, package_logger):
        setup_logging("DEBUG")
        setup_logging("WARNING")

        installed = [h for h in package_logger.handlers if getattr(h, "_settlement_handler", False)]
        assert len(installed) == 1
        assert package_logger.level == logging.WARNING

    def test_unknown_level_falls_back_to_info(self, package_logger):
        setup_logging("chatty")
        assert package_logger.level == logging.INFO

    def test_security_logger_is_a_child(self):
        package = logging.getLogger("settlement_engine")
        assert get_security_logger().parent is package
