"""
CLI Tests.

============================================================
PURPOSE
============================================================
Tests for argument parsing, validation, config wiring and
the main entry point over the mock exchange.

============================================================
"""

import logging

import pytest

from execution_engine.repository import InMemoryTradeRepository, SqlAlchemyTradeRepository
from orchestrator.cli import (
    build_config,
    build_repository,
    create_parser,
    main,
    parse_symbols,
    validate_args,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "TRADING_TRADING_PAIRS",
        "TRADING_MAIN_LOOP_INTERVAL_SECONDS",
        "BYBIT_API_KEY",
        "BYBIT_API_SECRET",
        "BYBIT_TESTNET",
        "DATABASE_URL",
    ):
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    return monkeypatch


@pytest.fixture(autouse=True)
def restore_logging():
    """main() reconfigures the root logger; put it back afterwards."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


def parse(*argv):
    return create_parser().parse_args(list(argv))


# ============================================================
# PARSING AND VALIDATION
# ============================================================

class TestParsing:
    """Tests for argument parsing."""

    def test_defaults(self):
        args = parse("run")

        assert args.command == "run"
        assert args.mock is False
        assert args.log_level == "INFO"
        assert args.log_format == "text"

    def test_unknown_command_exits(self):
        with pytest.raises(SystemExit):
            parse("trade")

    def test_parse_symbols(self):
        assert parse_symbols(" btcusdt, ETHUSDT ,,") == ["BTCUSDT", "ETHUSDT"]
        assert parse_symbols(None) == []


class TestValidation:
    """Tests for validate_args."""

    def test_valid(self):
        assert validate_args(parse("cycle", "--mock", "--symbols", "BTCUSDT,ETHUSDT")) == []

    def test_invalid_values(self):
        errors = validate_args(parse(
            "run", "--symbols", "BTC-USDT", "--interval", "0", "--max-cycles", "0",
            "--mock", "--testnet",
        ))

        assert "Invalid symbol: BTC-USDT" in errors
        assert "--interval must be positive" in errors
        assert "--max-cycles must be at least 1" in errors
        assert "--mock and --testnet are mutually exclusive" in errors


# ============================================================
# WIRING
# ============================================================

class TestWiring:
    """Tests for config and repository construction."""

    def test_build_config_applies_overrides(self):
        config = build_config(parse("run", "--symbols", "solusdt", "--interval", "5", "--testnet"))

        assert config.trading_pairs == ["SOLUSDT"]
        assert config.main_loop_interval_seconds == 5.0
        assert config.exchange.testnet is True

    def test_build_config_from_stored_row(self):
        stored = {"trading_pairs": ["ETHUSDT"], "max_active_pairs": 2}

        config = build_config(parse("run", "--interval", "5"), stored)

        assert config.trading_pairs == ["ETHUSDT"]
        assert config.max_active_pairs == 2
        assert config.main_loop_interval_seconds == 5.0

    def test_in_memory_repository_without_url(self):
        assert isinstance(build_repository(parse("run")), InMemoryTradeRepository)

    def test_sqlalchemy_repository_with_url(self):
        repository = build_repository(parse("run", "--database-url", "sqlite:///:memory:"))

        assert isinstance(repository, SqlAlchemyTradeRepository)


# ============================================================
# MAIN
# ============================================================

class TestMain:
    """Tests for the main entry point."""

    def test_cycle_with_mock(self, capsys):
        exit_code = main(["cycle", "--mock", "--symbols", "BTCUSDT"])

        assert exit_code == 0
        output = capsys.readouterr().out
        assert "BTCUSDT" in output
        assert "no_signal" in output

    def test_reconcile_with_mock(self, capsys):
        exit_code = main(["reconcile", "--mock", "--lookback-hours", "24"])

        assert exit_code == 0
        output = capsys.readouterr().out
        assert "writes" in output
        assert "Local trades are in sync with the exchange" in output

    def test_clear_cache_with_mock(self):
        assert main(["clear-cache", "--mock"]) == 0

    def test_invalid_symbol(self, capsys):
        assert main(["cycle", "--mock", "--symbols", "BTC/USDT"]) == 1
        assert "Invalid symbol: BTC/USDT" in capsys.readouterr().err

    def test_missing_credentials(self):
        assert main(["cycle", "--symbols", "BTCUSDT"]) == 2
