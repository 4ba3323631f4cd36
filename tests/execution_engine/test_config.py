"""
Trading Configuration Tests.

============================================================
PURPOSE
============================================================
Tests for TradingConfig parsing, validation and environment
loading.

============================================================
"""

from decimal import Decimal

import pytest

from core.exceptions import InvalidConfigError
from execution_engine.config import ExchangeConfig, TradingConfig, load_config_from_env


ENV_VARS = [
    "TRADING_TRADING_PAIRS",
    "TRADING_MAX_ORDER_AMOUNT_USD",
    "TRADING_MAX_ACTIVE_PAIRS",
    "TRADING_PRICE_DECIMALS_PER_SYMBOL",
    "TRADING_AUTO_CLOSE_AT_END_OF_DAY",
    "TRADING_STALE_PENDING_MINUTES",
    "BYBIT_TESTNET",
    "BYBIT_TIMEOUT_SECONDS",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Start from an environment without trading variables; restored afterwards."""
    for name in ENV_VARS:
        # setenv first so teardown also removes values written by load_dotenv
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    return monkeypatch


class TestTradingConfig:
    """Tests for TradingConfig."""

    def test_defaults_are_valid(self):
        config = TradingConfig()

        assert config.validate() == []
        assert config.max_order_amount_usd == Decimal("100")
        assert config.max_portfolio_exposure_percent == Decimal("20")
        assert config.exchange.timeout_seconds == 10.0
        assert config.manual_close_premium_percent == Decimal("0")
        assert config.detect_closed_by_balance is True

    def test_balance_detection_switch(self):
        config = TradingConfig.from_dict({"detect_closed_by_balance": "false"})

        assert config.detect_closed_by_balance is False

    def test_for_testing(self):
        config = TradingConfig.for_testing(max_positions_per_symbol=3)

        assert config.trading_pairs == ["BTCUSDT"]
        assert config.max_positions_per_symbol == 3
        assert config.exchange.testnet is True

    def test_from_dict_coerces_types(self):
        config = TradingConfig.from_dict({
            "max_positions_per_pair": "4",
            "max_order_amount_usd": 25.5,
            "averaging_down_enabled": "false",
            "min_support_strength": "0.4",
            "trading_pairs": "btcusdt, ethusdt",
            "stale_pending_minutes": "15",
            "minimum_notional_per_symbol": {"BTCUSDT": 5},
            "exchange": {"testnet": True, "timeout_seconds": 2},
            "unknown_key": "ignored",
        })

        assert config.max_positions_per_symbol == 4
        assert config.max_order_amount_usd == Decimal("25.5")
        assert config.averaging_down_enabled is False
        assert config.min_support_strength == 0.4
        assert config.trading_pairs == ["BTCUSDT", "ETHUSDT"]
        assert config.stale_pending_minutes == 15
        assert config.minimum_notional_per_symbol == {"BTCUSDT": Decimal("5")}
        assert config.exchange == ExchangeConfig(testnet=True, timeout_seconds=2)

    def test_validation_errors(self):
        config = TradingConfig(
            max_active_pairs=0,
            max_portfolio_exposure_percent=Decimal("150"),
            support_candle_count=5,
            price_decimals_per_symbol={"BTCUSDT": 9},
        )

        errors = config.validate()

        assert "max_active_pairs must be >= 1" in errors
        assert "max_portfolio_exposure_percent must be in (0, 100]" in errors
        assert "support_candle_count must be >= 10" in errors
        assert "decimal override for BTCUSDT must be in [0, 8]" in errors

    def test_validate_or_raise(self):
        with pytest.raises(InvalidConfigError) as exc_info:
            TradingConfig(main_loop_interval_seconds=0).validate_or_raise()

        assert exc_info.value.errors == ["main_loop_interval_seconds must be positive"]


class TestLoadConfigFromEnv:
    """Tests for load_config_from_env."""

    def test_environment_overrides(self, clean_env):
        clean_env.setenv("TRADING_TRADING_PAIRS", "BTCUSDT,ETHUSDT")
        clean_env.setenv("TRADING_MAX_ORDER_AMOUNT_USD", "50")
        clean_env.setenv("TRADING_PRICE_DECIMALS_PER_SYMBOL", '{"BTCUSDT": 2}')
        clean_env.setenv("TRADING_AUTO_CLOSE_AT_END_OF_DAY", "yes")
        clean_env.setenv("BYBIT_TESTNET", "true")
        clean_env.setenv("BYBIT_TIMEOUT_SECONDS", "3")

        config = load_config_from_env()

        assert config.trading_pairs == ["BTCUSDT", "ETHUSDT"]
        assert config.max_order_amount_usd == Decimal("50")
        assert config.price_decimals_per_symbol == {"BTCUSDT": 2}
        assert config.auto_close_at_end_of_day is True
        assert config.exchange.testnet is True
        assert config.exchange.timeout_seconds == 3.0

    def test_environment_wins_over_base(self, clean_env):
        clean_env.setenv("TRADING_MAX_ACTIVE_PAIRS", "7")

        config = load_config_from_env(base={"max_active_pairs": 2, "max_positions_per_symbol": 1})

        assert config.max_active_pairs == 7
        assert config.max_positions_per_symbol == 1

    def test_env_file(self, clean_env, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("TRADING_STALE_PENDING_MINUTES=45\n")

        config = load_config_from_env(str(env_file))

        assert config.stale_pending_minutes == 45

    def test_invalid_value_raises(self, clean_env):
        clean_env.setenv("TRADING_MAX_ACTIVE_PAIRS", "0")

        with pytest.raises(InvalidConfigError):
            load_config_from_env()
