"""
Execution Engine - Configuration.

============================================================
PURPOSE
============================================================
All configuration consumed by the trading core.

SOURCES:
- A stored per-user configuration row (from_dict)
- Environment variables, optionally from a .env file

CRITICAL CONSTRAINTS:
- Every option has a safe default
- Invalid values are reported, never silently clamped

============================================================
"""

import json
import os
import logging
from dataclasses import dataclass, field, fields
from decimal import Decimal
from typing import Dict, Any, List, Optional

from dotenv import load_dotenv

from core.exceptions import InvalidConfigError


logger = logging.getLogger(__name__)


# ============================================================
# EXCHANGE CONFIGURATION
# ============================================================

@dataclass
class ExchangeConfig:
    """Exchange gateway configuration."""

    api_key_env: str = "BYBIT_API_KEY"
    """Environment variable for API key."""

    api_secret_env: str = "BYBIT_API_SECRET"
    """Environment variable for API secret."""

    testnet: bool = False
    """Whether to use testnet."""

    recv_window: int = 5000
    """Request validity window in ms."""

    timeout_seconds: float = 10.0
    """Bounded timeout for every gateway call."""


# ============================================================
# TRADING CONFIGURATION
# ============================================================

@dataclass
class TradingConfig:
    """
    Recognized trading options.

    Percent values are plain percentages (2 means 2%).
    """

    # Position limits
    max_active_pairs: int = 5
    """Maximum distinct symbols with open positions."""

    max_positions_per_symbol: int = 2
    """Maximum open positions per symbol."""

    max_order_amount_usd: Decimal = Decimal("100")
    """Quote amount per order."""

    max_portfolio_exposure_percent: Decimal = Decimal("20")
    """Open exposure cap relative to portfolio value."""

    new_support_threshold_percent: Decimal = Decimal("1")
    """Duplicate-order closeness threshold."""

    # Signal generation
    entry_offset_percent: Decimal = Decimal("0.1")
    """Entry offset above support (below current when averaging down)."""

    take_profit_percent: Decimal = Decimal("2")
    """Take-profit target for open positions."""

    support_candle_count: int = 128
    """Lookback window for support detection."""

    support_lower_bound_percent: Decimal = Decimal("2")
    """Lower edge of the accepted distance window."""

    support_upper_bound_percent: Decimal = Decimal("5")
    """Upper edge of the accepted distance window."""

    min_support_strength: float = 0.3
    """Minimum support strength to accept a level."""

    averaging_down_enabled: bool = True
    """Whether existing positions may be averaged down."""

    averaging_down_confidence: float = 0.7
    """Confidence assigned to averaging-down signals."""

    max_price_deviation_percent: Decimal = Decimal("0.01")
    """Maximum deviation between raw and formatted entry price."""

    chart_timeframe: str = "4h"
    """Candle interval for support detection."""

    # Loop
    trading_pairs: List[str] = field(default_factory=list)
    """Symbols evaluated every cycle."""

    main_loop_interval_seconds: float = 30.0
    """Seconds between decision cycles."""

    # Closing
    auto_close_at_end_of_day: bool = False
    """Close profitable positions at UTC date rollover."""

    eod_close_premium_percent: Decimal = Decimal("0.5")
    """Minimum profit percent for an end-of-day close."""

    manual_close_premium_percent: Decimal = Decimal("0")
    """Premium over current price for manual close limit orders (0 sells at market)."""

    # Per-symbol overrides
    minimum_notional_per_symbol: Dict[str, Decimal] = field(default_factory=dict)
    quantity_increment_per_symbol: Dict[str, Decimal] = field(default_factory=dict)
    price_decimals_per_symbol: Dict[str, int] = field(default_factory=dict)
    quantity_decimals_per_symbol: Dict[str, int] = field(default_factory=dict)

    # Reconciliation
    reconciliation_lookback_hours: int = 168
    """Order history window for reconciliation."""

    stale_pending_minutes: Optional[int] = None
    """Cancel local pending trades without order id older than this."""

    detect_closed_by_balance: bool = True
    """Close filled buys whose base asset balance on the exchange is zero."""

    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    """Exchange configuration."""

    # --------------------------------------------------------
    # VALIDATION
    # --------------------------------------------------------

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of error strings (empty when valid)
        """
        errors = []

        if self.max_active_pairs < 1:
            errors.append("max_active_pairs must be >= 1")
        if self.max_positions_per_symbol < 1:
            errors.append("max_positions_per_symbol must be >= 1")
        if self.max_order_amount_usd <= 0:
            errors.append("max_order_amount_usd must be positive")
        if not (0 < self.max_portfolio_exposure_percent <= 100):
            errors.append("max_portfolio_exposure_percent must be in (0, 100]")
        if self.support_candle_count < 10:
            errors.append("support_candle_count must be >= 10")
        if self.support_lower_bound_percent < 0 or self.support_upper_bound_percent < 0:
            errors.append("support bounds must be non-negative")
        if not (0 <= self.min_support_strength <= 1):
            errors.append("min_support_strength must be in [0, 1]")
        if not (0 <= self.averaging_down_confidence <= 1):
            errors.append("averaging_down_confidence must be in [0, 1]")
        if self.main_loop_interval_seconds <= 0:
            errors.append("main_loop_interval_seconds must be positive")
        if self.new_support_threshold_percent < 0:
            errors.append("new_support_threshold_percent must be non-negative")
        if self.exchange.timeout_seconds <= 0:
            errors.append("exchange.timeout_seconds must be positive")

        for symbol, decimals in {
            **self.price_decimals_per_symbol,
            **self.quantity_decimals_per_symbol,
        }.items():
            if not (0 <= decimals <= 8):
                errors.append(f"decimal override for {symbol} must be in [0, 8]")

        return errors

    def validate_or_raise(self) -> "TradingConfig":
        errors = self.validate()
        if errors:
            raise InvalidConfigError(errors)
        return self

    # --------------------------------------------------------
    # CONSTRUCTION
    # --------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradingConfig":
        """
        Build from a stored configuration row.

        Unknown keys are ignored. Decimal fields accept numbers or strings.

        Args:
            data: Configuration mapping

        Returns:
            TradingConfig
        """
        data = dict(data)
        if "max_positions_per_pair" in data and "max_positions_per_symbol" not in data:
            data["max_positions_per_symbol"] = data.pop("max_positions_per_pair")

        defaults = cls()
        kwargs: Dict[str, Any] = {}

        for f in fields(cls):
            if f.name not in data or data[f.name] is None:
                continue
            value = data[f.name]
            current = getattr(defaults, f.name)

            if f.name == "stale_pending_minutes":
                kwargs[f.name] = int(value)
            elif f.name == "exchange":
                kwargs[f.name] = value if isinstance(value, ExchangeConfig) else ExchangeConfig(**value)
            elif f.name in ("minimum_notional_per_symbol", "quantity_increment_per_symbol"):
                kwargs[f.name] = {k: Decimal(str(v)) for k, v in value.items()}
            elif f.name in ("price_decimals_per_symbol", "quantity_decimals_per_symbol"):
                kwargs[f.name] = {k: int(v) for k, v in value.items()}
            elif isinstance(current, Decimal):
                kwargs[f.name] = Decimal(str(value))
            elif isinstance(current, bool):
                kwargs[f.name] = _parse_bool(value)
            elif isinstance(current, int):
                kwargs[f.name] = int(value)
            elif isinstance(current, float):
                kwargs[f.name] = float(value)
            elif isinstance(current, list):
                kwargs[f.name] = _parse_list(value)
            else:
                kwargs[f.name] = value

        return cls(**kwargs)

    @classmethod
    def for_testing(cls, **overrides) -> "TradingConfig":
        """Get configuration for testing."""
        base = {
            "trading_pairs": ["BTCUSDT"],
            "main_loop_interval_seconds": 0.01,
            "exchange": ExchangeConfig(testnet=True, timeout_seconds=1.0),
        }
        base.update(overrides)
        return cls.from_dict(base)


# ============================================================
# ENVIRONMENT LOADING
# ============================================================

ENV_PREFIX = "TRADING_"


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _parse_list(value: Any) -> List[str]:
    if isinstance(value, (list, tuple)):
        return [str(v).strip().upper() for v in value if str(v).strip()]
    return [v.strip().upper() for v in str(value).split(",") if v.strip()]


def load_config_from_env(
    env_file: Optional[str] = None,
    base: Optional[Dict[str, Any]] = None,
) -> TradingConfig:
    """
    Load configuration from TRADING_* environment variables.

    Per-symbol override maps are read as JSON objects, e.g.
    TRADING_PRICE_DECIMALS_PER_SYMBOL='{"BTCUSDT": 2}'.

    Args:
        env_file: Optional .env file path
        base: Values applied before environment overrides

    Returns:
        Validated TradingConfig
    """
    load_dotenv(env_file)

    data: Dict[str, Any] = dict(base or {})
    for f in fields(TradingConfig):
        if f.name == "exchange":
            continue
        raw = os.getenv(f"{ENV_PREFIX}{f.name.upper()}")
        if raw is None:
            continue
        if f.name.endswith("_per_symbol"):
            data[f.name] = json.loads(raw)
        else:
            data[f.name] = raw

    exchange = dict(data.pop("exchange", {}) or {})
    if os.getenv("BYBIT_TESTNET") is not None:
        exchange["testnet"] = _parse_bool(os.getenv("BYBIT_TESTNET"))
    if os.getenv("BYBIT_TIMEOUT_SECONDS") is not None:
        exchange["timeout_seconds"] = float(os.getenv("BYBIT_TIMEOUT_SECONDS"))
    if exchange:
        data["exchange"] = exchange

    config = TradingConfig.from_dict(data)
    logger.info(
        f"Configuration loaded | pairs={config.trading_pairs} | "
        f"interval={config.main_loop_interval_seconds}s | testnet={config.exchange.testnet}"
    )
    return config.validate_or_raise()
