"""
Orchestrator - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line interface for the trading core.

- Loads configuration from a stored user row, .env / environment
  and CLI flags
- Wires gateway, repository and trading loop
- Entry point for the application

============================================================
USAGE
============================================================
python -m orchestrator.cli run --symbols BTCUSDT,ETHUSDT
python -m orchestrator.cli --mock cycle --symbols BTCUSDT
python -m orchestrator.cli reconcile --lookback-hours 24
python -m orchestrator.cli clear-cache

============================================================
"""

import argparse
import asyncio
import logging
import os
import re
import sys
from datetime import timedelta
from typing import Any, Dict, List, Optional

from core.exceptions import ConfigurationError, GatewayError
from execution_engine.adapters import MockExchangeGateway, create_gateway
from execution_engine.adapters.base import ExchangeGateway
from execution_engine.config import TradingConfig, load_config_from_env
from execution_engine.repository import (
    InMemoryTradeRepository,
    SqlAlchemyTradeRepository,
    TradeRepository,
)
from .core import TradingLoop, setup_logging


logger = logging.getLogger(__name__)


SYMBOL_PATTERN = re.compile(r"^[A-Z0-9]{4,20}$")
COMMANDS = ("run", "cycle", "reconcile", "clear-cache")


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="trading-core",
        description="Spot trading core: support entries, governed execution, reconciliation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  run          - Run the decision loop until interrupted
  cycle        - Run a single decision cycle and exit
  reconcile    - Reconcile local trades with exchange order history
  clear-cache  - Drop cached instrument rules

Examples:
  %(prog)s run --symbols BTCUSDT,ETHUSDT --interval 30
  %(prog)s --mock cycle --symbols BTCUSDT
  %(prog)s reconcile --lookback-hours 24
        """
    )

    parser.add_argument(
        "command",
        choices=COMMANDS,
        help="Command to run",
    )

    # --------------------------------------------------------
    # Exchange Options
    # --------------------------------------------------------
    exchange_group = parser.add_argument_group("Exchange Options")

    exchange_group.add_argument(
        "--mock",
        action="store_true",
        help="Use the in-memory mock exchange",
    )

    exchange_group.add_argument(
        "--testnet",
        action="store_true",
        help="Use the exchange testnet",
    )

    # --------------------------------------------------------
    # Trading Options
    # --------------------------------------------------------
    trading_group = parser.add_argument_group("Trading Options")

    trading_group.add_argument(
        "--symbols",
        type=str,
        metavar="SYMBOLS",
        help="Comma-separated symbols (overrides TRADING_TRADING_PAIRS)",
    )

    trading_group.add_argument(
        "--interval",
        type=float,
        metavar="SECONDS",
        help="Main loop interval in seconds (overrides config)",
    )

    trading_group.add_argument(
        "--max-cycles",
        type=int,
        metavar="N",
        help="Stop the run command after N cycles",
    )

    trading_group.add_argument(
        "--reconcile-every",
        type=int,
        metavar="N",
        help="Reconcile after every N cycles of the run command",
    )

    trading_group.add_argument(
        "--lookback-hours",
        type=int,
        metavar="HOURS",
        help="Reconciliation lookback (default from config)",
    )

    # --------------------------------------------------------
    # Storage and Logging
    # --------------------------------------------------------
    system_group = parser.add_argument_group("System Options")

    system_group.add_argument(
        "--database-url",
        type=str,
        metavar="URL",
        help="SQLAlchemy database URL (default: DATABASE_URL, else in-memory)",
    )

    system_group.add_argument(
        "--user-id",
        type=str,
        metavar="ID",
        help="Load the stored configuration row of this user before environment overrides",
    )

    system_group.add_argument(
        "--env-file",
        type=str,
        metavar="PATH",
        help="Path to a .env file",
    )

    system_group.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default="INFO",
        help="Logging level (default: INFO)",
    )

    system_group.add_argument(
        "--log-format",
        type=str,
        choices=["json", "text"],
        default="text",
        help="Log output format (default: text)",
    )

    return parser


# ============================================================
# CLI VALIDATION
# ============================================================

def parse_symbols(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [s.strip().upper() for s in value.split(",") if s.strip()]


def validate_args(args: argparse.Namespace) -> List[str]:
    """
    Validate CLI arguments.

    Args:
        args: Parsed arguments

    Returns:
        List of validation errors
    """
    errors = []

    for symbol in parse_symbols(args.symbols):
        if not SYMBOL_PATTERN.match(symbol):
            errors.append(f"Invalid symbol: {symbol}")

    if args.interval is not None and args.interval <= 0:
        errors.append("--interval must be positive")

    if args.max_cycles is not None and args.max_cycles < 1:
        errors.append("--max-cycles must be at least 1")

    if args.reconcile_every is not None and args.reconcile_every < 1:
        errors.append("--reconcile-every must be at least 1")

    if args.lookback_hours is not None and args.lookback_hours < 1:
        errors.append("--lookback-hours must be at least 1")

    if args.mock and args.testnet:
        errors.append("--mock and --testnet are mutually exclusive")

    return errors


# ============================================================
# COMPONENT WIRING
# ============================================================

def build_config(args: argparse.Namespace, stored: Optional[Dict[str, Any]] = None) -> TradingConfig:
    """Load configuration (stored row, then environment) and apply CLI overrides."""
    config = load_config_from_env(args.env_file, base=stored)
    symbols = parse_symbols(args.symbols)
    if symbols:
        config.trading_pairs = symbols
    if args.interval is not None:
        config.main_loop_interval_seconds = args.interval
    if args.testnet:
        config.exchange.testnet = True
    return config.validate_or_raise()


def build_gateway(args: argparse.Namespace, config: TradingConfig) -> ExchangeGateway:
    if args.mock:
        return MockExchangeGateway()

    api_key = os.getenv(config.exchange.api_key_env)
    api_secret = os.getenv(config.exchange.api_secret_env)
    if not api_key or not api_secret:
        raise ConfigurationError(
            f"Missing exchange credentials: set {config.exchange.api_key_env} "
            f"and {config.exchange.api_secret_env}, or use --mock"
        )
    return create_gateway(
        "bybit",
        api_key=api_key,
        api_secret=api_secret,
        testnet=config.exchange.testnet,
        timeout_seconds=config.exchange.timeout_seconds,
    )


def build_repository(args: argparse.Namespace) -> TradeRepository:
    database_url = args.database_url or os.getenv("DATABASE_URL")
    if database_url:
        return SqlAlchemyTradeRepository.from_url(database_url)
    logger.warning("No database configured, trades are kept in memory only")
    return InMemoryTradeRepository()


# ============================================================
# MAIN ENTRY POINT
# ============================================================

async def async_main(args: argparse.Namespace) -> int:
    """
    Async main entry point.

    Args:
        args: Parsed arguments

    Returns:
        Exit code
    """
    repository = build_repository(args)
    stored = repository.read_config(args.user_id) if args.user_id else None

    try:
        config = build_config(args, stored)
        gateway = build_gateway(args, config)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e.message}")
        return 2

    async with gateway:
        loop = TradingLoop(config, gateway, repository)
        try:
            if args.command == "run":
                await loop.run_forever(
                    max_cycles=args.max_cycles,
                    reconcile_every=args.reconcile_every,
                )
                return 0

            if args.command == "cycle":
                result = await loop.run_cycle()
                for outcome in result.outcomes:
                    print(f"{outcome.symbol:12s} {outcome.status.value:14s} {outcome.reason}")
                return 1 if result.errors else 0

            if args.command == "reconcile":
                lookback = timedelta(hours=args.lookback_hours) if args.lookback_hours else None
                report = await loop.reconcile(lookback)
                for key, value in report.summary().items():
                    print(f"{key:22s} {value}")
                for recommendation in report.recommendations:
                    print(f"- {recommendation}")
                return 0

            loop.clear_cache()
            return 0

        except GatewayError as e:
            logger.error(f"Gateway error: {e.message}")
            return 1
        except asyncio.CancelledError:
            loop.request_stop()
            return 130


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    errors = validate_args(args)
    if errors:
        for error in errors:
            print(f"Error: {error}", file=sys.stderr)
        return 1

    setup_logging(level=args.log_level, log_format=args.log_format)

    try:
        return asyncio.run(async_main(args))
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        return 130


# ============================================================
# MODULE EXECUTION
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
