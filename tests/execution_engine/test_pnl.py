"""
P&L Calculator Tests.

============================================================
PURPOSE
============================================================
Tests for side-aware, fill-price-aware P&L.

============================================================
"""

from decimal import Decimal

import pytest

from execution_engine.pnl import PnLCalculator, calculate_trade_metrics
from execution_engine.types import Trade, TradeSide, TradeStatus


@pytest.fixture
def calculator():
    return PnLCalculator()


def make_trade(symbol="BTCUSDT", side=TradeSide.BUY, status=TradeStatus.FILLED,
               submitted="100", fill="100", quantity="1", profit_loss=None):
    return Trade(
        symbol=symbol,
        side=side,
        quantity=Decimal(quantity),
        submitted_price=Decimal(submitted),
        status=status,
        fill_price=Decimal(fill) if fill is not None else None,
        profit_loss=Decimal(profit_loss) if profit_loss is not None else None,
    )


# ============================================================
# CORE FORMULA TESTS
# ============================================================

class TestComputePl:
    """Tests for compute_pl / compute_percent."""

    def test_buy_profit(self, calculator):
        assert calculator.compute_pl(TradeSide.BUY, "100", "110", "2") == Decimal("20")

    def test_sell_is_symmetric(self, calculator):
        buy = calculator.compute_pl(TradeSide.BUY, "100", "90", "2")
        sell = calculator.compute_pl(TradeSide.SELL, "100", "90", "2")

        assert buy == Decimal("-20")
        assert sell == Decimal("20")

    def test_string_side_accepted(self, calculator):
        assert calculator.compute_pl("SELL", "100", "95", "1") == Decimal("5")

    def test_fill_price_preferred(self, calculator):
        assert calculator.compute_pl(TradeSide.BUY, "100", "105", "1", fill_price="101") == Decimal("4")

    def test_zero_fill_price_falls_back(self, calculator):
        assert calculator.compute_pl(TradeSide.BUY, "100", "105", "1", fill_price="0") == Decimal("5")

    def test_percent(self, calculator):
        percent = calculator.compute_percent(TradeSide.BUY, "100", "103", fill_price="101")

        assert percent.quantize(Decimal("0.01")) == Decimal("1.98")

    @pytest.mark.parametrize("status", [TradeStatus.PENDING, TradeStatus.PARTIAL_FILLED, "cancelled"])
    def test_not_filled_is_zero(self, calculator, status):
        assert calculator.compute_pl(TradeSide.BUY, "100", "200", "1", status=status) == Decimal("0")

    @pytest.mark.parametrize("entry,current,quantity", [
        ("0", "100", "1"),
        ("100", "-1", "1"),
        ("100", "101", "0"),
        ("abc", "101", "1"),
        ("100", None, "1"),
    ])
    def test_invalid_input_yields_zero_with_note(self, calculator, entry, current, quantity):
        result = calculator.evaluate_pl(TradeSide.BUY, entry, current, quantity)

        assert result.value == Decimal("0")
        assert not result.valid
        assert result.note.startswith("invalid")

    def test_unknown_side(self, calculator):
        result = calculator.evaluate_pl("hold", "100", "101", "1")

        assert result.note == "unknown side"


# ============================================================
# TRADE-LEVEL TESTS
# ============================================================

class TestTradePl:
    """Tests for trade_pl / trade_percent."""

    def test_filled_trade(self, calculator):
        trade = make_trade(submitted="100", fill="101", quantity="2")

        assert calculator.trade_pl(trade, "103") == Decimal("4")
        assert calculator.trade_percent(trade, "103").quantize(Decimal("0.01")) == Decimal("1.98")

    def test_pending_trade_is_zero(self, calculator):
        trade = make_trade(status=TradeStatus.PENDING, fill=None)

        assert calculator.trade_pl(trade, "150") == Decimal("0")

    def test_closed_trade_keeps_realized(self, calculator):
        trade = make_trade(status=TradeStatus.CLOSED, profit_loss="7.5", quantity="1")

        assert calculator.trade_pl(trade, "1000") == Decimal("7.5")
        assert calculator.trade_percent(trade, "1000") == Decimal("7.5")

    def test_realized_pl(self):
        assert PnLCalculator.realized_pl(Decimal("100"), Decimal("102"), Decimal("0.5")) == Decimal("1.0")
        assert PnLCalculator.realized_pl(
            Decimal("100"), Decimal("102"), Decimal("0.5"), TradeSide.SELL,
        ) == Decimal("-1.0")


# ============================================================
# METRICS TESTS
# ============================================================

class TestTradeMetrics:
    """Tests for calculate_trade_metrics."""

    def test_metrics(self):
        trades = [
            make_trade(status=TradeStatus.CLOSED, profit_loss="10"),
            make_trade(status=TradeStatus.CLOSED, profit_loss="-4"),
            make_trade(symbol="BTCUSDT", fill="100", quantity="1"),
            make_trade(symbol="ETHUSDT", fill="50", quantity="1"),
            make_trade(status=TradeStatus.PENDING, fill=None),
        ]

        metrics = calculate_trade_metrics(trades, {"BTCUSDT": Decimal("105")})

        assert metrics.total_trades == 5
        assert metrics.closed_trades == 2
        assert metrics.filled_trades == 2
        assert metrics.closed_positions_profit == Decimal("6")
        assert metrics.unrealized_profit == Decimal("5")
        assert metrics.total_profit == Decimal("11")
        assert metrics.win_rate_percent == Decimal("50.00")
        assert metrics.notes == ["no current price for ETHUSDT"]

    def test_closed_without_pnl_excluded_from_win_rate(self):
        unknown = make_trade(symbol="SOLUSDT", status=TradeStatus.CLOSED)
        trades = [make_trade(status=TradeStatus.CLOSED, profit_loss="3"), unknown]

        metrics = calculate_trade_metrics(trades, {})

        assert metrics.closed_trades == 2
        assert metrics.closed_positions_profit == Decimal("3")
        assert metrics.win_rate_percent == Decimal("100.00")
        assert metrics.notes == [f"no realized P&L for closed SOLUSDT trade {unknown.id}"]

    def test_empty(self):
        metrics = calculate_trade_metrics([], {})

        assert metrics.total_trades == 0
        assert metrics.win_rate_percent == Decimal("0")
