"""
Signal Generator Tests.

============================================================
PURPOSE
============================================================
Tests for support-entry and averaging-down signals.

TEST CATEGORIES:
- New position: Entry pricing, bounds, strength, fallback
- Averaging down: Last purchase anchoring, gating
- Input handling: Bad prices, short windows, metadata failures

============================================================
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from execution_engine.adapters import MockExchangeGateway
from execution_engine.config import TradingConfig
from execution_engine.instruments import InstrumentCatalog
from execution_engine.precision import PrecisionFormatter
from execution_engine.types import Candle, SignalKind, Trade, TradeSide, TradeStatus
from strategy_engine import SignalGenerator


START = datetime(2024, 6, 1, tzinfo=timezone.utc)


def make_candles(lows):
    return [
        Candle(
            open_time=START + timedelta(hours=4 * i),
            open=Decimal(str(low)) + 2,
            high=Decimal(str(low)) + 3,
            low=Decimal(str(low)),
            close=Decimal(str(low)) + 1,
            volume=Decimal("10"),
        )
        for i, low in enumerate(lows)
    ]


def support_candles():
    """Support near 100.1 touched three times."""
    lows = [104 + i for i in range(20)]
    lows[5] = "100.0"
    lows[12] = "100.2"
    lows[18] = "100.1"
    return make_candles(lows)


def filled_buy(fill="100", status=TradeStatus.FILLED, minutes=0):
    return Trade(
        symbol="BTCUSDT",
        side=TradeSide.BUY,
        quantity=Decimal("1"),
        submitted_price=Decimal(fill),
        status=status,
        fill_price=Decimal(fill) if status.has_fill() else None,
        created_at=START + timedelta(minutes=minutes),
    )


@pytest.fixture
def gateway():
    return MockExchangeGateway()


@pytest.fixture
def generator(gateway):
    return SignalGenerator(PrecisionFormatter(InstrumentCatalog(gateway)), TradingConfig())


# ============================================================
# NEW POSITION
# ============================================================

class TestSupportEntry:
    """Signals for symbols without open positions."""

    @pytest.mark.asyncio
    async def test_signal_above_support(self, generator):
        result = await generator.generate_entry_signal("BTCUSDT", "103", support_candles())

        assert result.generated
        signal = result.signal
        assert signal.kind == SignalKind.SUPPORT_ENTRY
        assert signal.side == TradeSide.BUY
        assert signal.price == Decimal("100.20")
        assert signal.support_level == Decimal("100.10")
        assert signal.confidence == pytest.approx(0.8589, abs=1e-4)
        assert signal.reasoning.startswith("NEW POSITION:")
        assert "3 touches" in signal.reasoning
        assert "distance 2.72%" in signal.reasoning

    @pytest.mark.asyncio
    async def test_price_too_far_above_support(self, generator):
        result = await generator.generate_entry_signal("BTCUSDT", "110", support_candles())

        assert not result
        assert result.reason.startswith("distance 8.91% outside bounds")
        assert result.kind == SignalKind.SUPPORT_ENTRY

    @pytest.mark.asyncio
    async def test_weak_support_rejected(self, gateway):
        generator = SignalGenerator(
            PrecisionFormatter(InstrumentCatalog(gateway)),
            TradingConfig(min_support_strength=0.9),
        )

        result = await generator.generate_entry_signal("BTCUSDT", "103", support_candles())

        assert result.reason == "support strength 0.86 below minimum 0.9"

    @pytest.mark.asyncio
    async def test_lowest_low_fallback(self, generator):
        result = await generator.generate_entry_signal("BTCUSDT", "103", make_candles(range(100, 120)))

        assert result.generated
        assert result.signal.support_level == Decimal("100.50")
        assert result.signal.price == Decimal("100.60")
        assert "lowest-low fallback" in result.signal.reasoning

    @pytest.mark.asyncio
    async def test_per_call_config_overrides(self, generator):
        config = TradingConfig(support_upper_bound_percent=Decimal("10"))

        result = await generator.generate_entry_signal("BTCUSDT", "110", support_candles(), config=config)

        assert result.generated

    @pytest.mark.asyncio
    async def test_coarse_tick_rejected_by_deviation(self, gateway, generator):
        gateway.set_instrument("BTCUSDT", tick_size="1")

        result = await generator.generate_entry_signal("BTCUSDT", "103", support_candles())

        assert not result
        assert result.reason.startswith("formatted entry 100 deviates")

    @pytest.mark.asyncio
    async def test_sell_legs_do_not_trigger_averaging(self, generator):
        sell = filled_buy().copy_with(side=TradeSide.SELL)

        result = await generator.generate_entry_signal(
            "BTCUSDT", "103", support_candles(), open_trades=[sell],
        )

        assert result.signal.kind == SignalKind.SUPPORT_ENTRY


# ============================================================
# AVERAGING DOWN
# ============================================================

class TestAveragingDown:
    """Signals for symbols with open positions."""

    @pytest.mark.asyncio
    async def test_entry_below_current(self, generator):
        result = await generator.generate_entry_signal(
            "BTCUSDT", "99", support_candles(), open_trades=[filled_buy("100")],
        )

        assert result.generated
        signal = result.signal
        assert signal.kind == SignalKind.AVERAGING_DOWN
        assert signal.price == Decimal("98.90")
        assert signal.confidence == 0.7
        assert signal.support_level is None
        assert signal.reasoning.startswith("AVERAGING DOWN:")

    @pytest.mark.asyncio
    async def test_anchored_on_latest_purchase(self, generator):
        trades = [filled_buy("110", minutes=0), filled_buy("100", minutes=30)]

        result = await generator.generate_entry_signal("BTCUSDT", "99", [], open_trades=trades)

        assert result.generated
        assert "last purchase 100" in result.signal.reasoning
        assert "open positions 2" in result.signal.reasoning

    @pytest.mark.asyncio
    async def test_drop_outside_bounds(self, generator):
        result = await generator.generate_entry_signal(
            "BTCUSDT", "95", [], open_trades=[filled_buy("100")],
        )

        assert not result
        assert result.reason.startswith("price change -5.00% since last purchase 100 outside bounds")
        assert result.kind == SignalKind.AVERAGING_DOWN

    @pytest.mark.asyncio
    async def test_disabled(self, generator):
        config = TradingConfig(averaging_down_enabled=False)

        result = await generator.generate_entry_signal(
            "BTCUSDT", "99", support_candles(), config=config, open_trades=[filled_buy()],
        )

        assert result.reason == "open position exists and averaging down is disabled"

    @pytest.mark.asyncio
    async def test_pending_only(self, generator):
        pending = filled_buy(status=TradeStatus.PENDING)

        result = await generator.generate_entry_signal(
            "BTCUSDT", "99", support_candles(), open_trades=[pending],
        )

        assert result.reason == "open orders awaiting fill"


# ============================================================
# INPUT HANDLING
# ============================================================

class TestInputs:
    """Degenerate inputs."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("price", ["abc", "0", "-5"])
    async def test_invalid_price(self, generator, price):
        result = await generator.generate_entry_signal("BTCUSDT", price, support_candles())

        assert not result
        assert result.reason.startswith("invalid current price")

    @pytest.mark.asyncio
    async def test_insufficient_candles(self, generator):
        result = await generator.generate_entry_signal("BTCUSDT", "103", support_candles()[:5])

        assert result.reason == "insufficient candles (5 < 10)"

    @pytest.mark.asyncio
    async def test_window_limited_to_configured_count(self, generator):
        config = TradingConfig(support_candle_count=10)

        result = await generator.generate_entry_signal("BTCUSDT", "103", support_candles(), config=config)

        # Last ten candles hold two of the three touches
        assert result.generated
        assert "2 touches" in result.signal.reasoning

    @pytest.mark.asyncio
    async def test_metadata_unavailable(self, gateway, generator):
        gateway.fail_next("get_instrument_info")

        result = await generator.generate_entry_signal("BTCUSDT", "103", support_candles())

        assert not result
        assert result.reason.startswith("Instrument metadata unavailable for BTCUSDT")
