"""
Execution Engine - P&L Calculator.

============================================================
PURPOSE
============================================================
The single source of truth for profit/loss figures.

RULES:
- Live P&L only for FILLED trades; everything else open is 0
- CLOSED/CANCELLED trades report their stored realized P&L
- Effective entry = fill price when positive, else submitted price
- Buy:  (current - entry) x quantity
- Sell: (entry - current) x quantity
- Invalid input yields 0 plus a diagnostic note, never an exception

============================================================
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional, Union

from .types import Trade, TradeSide, TradeStatus


logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")

Number = Union[Decimal, int, float, str, None]


# ============================================================
# RESULT TYPE
# ============================================================

@dataclass
class PnLResult:
    """P&L figure with an optional diagnostic note."""

    value: Decimal = ZERO
    note: Optional[str] = None

    @property
    def valid(self) -> bool:
        return self.note is None


def _parse(value: Number) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


def _side(side: Union[TradeSide, str]) -> Optional[TradeSide]:
    if isinstance(side, TradeSide):
        return side
    try:
        return TradeSide(str(side).lower())
    except ValueError:
        return None


def _status(status: Union[TradeStatus, str]) -> Optional[TradeStatus]:
    if isinstance(status, TradeStatus):
        return status
    try:
        return TradeStatus(str(status).lower())
    except ValueError:
        return None


# ============================================================
# PNL CALCULATOR
# ============================================================

class PnLCalculator:
    """Side-aware, fill-price-aware P&L computations."""

    # --------------------------------------------------------
    # CORE FORMULAS
    # --------------------------------------------------------

    def evaluate_pl(
        self,
        side: Union[TradeSide, str],
        entry_price: Number,
        current_price: Number,
        quantity: Number,
        fill_price: Number = None,
        status: Union[TradeStatus, str] = TradeStatus.FILLED,
    ) -> PnLResult:
        """Live P&L with diagnostics."""
        parsed_status = _status(status)
        if parsed_status != TradeStatus.FILLED:
            return PnLResult(ZERO)

        parsed_side = _side(side)
        entry = self._effective_entry(entry_price, fill_price)
        current = _parse(current_price)
        qty = _parse(quantity)

        note = self._check_inputs(parsed_side, entry, current, qty)
        if note:
            logger.debug(f"P&L input rejected | {note}")
            return PnLResult(ZERO, note)

        per_unit = current - entry if parsed_side == TradeSide.BUY else entry - current
        return PnLResult(per_unit * qty)

    def evaluate_percent(
        self,
        side: Union[TradeSide, str],
        entry_price: Number,
        current_price: Number,
        fill_price: Number = None,
        status: Union[TradeStatus, str] = TradeStatus.FILLED,
    ) -> PnLResult:
        """Live percent change with diagnostics."""
        result = self.evaluate_pl(side, entry_price, current_price, Decimal("1"), fill_price, status)
        if not result.valid or result.value == ZERO:
            return result
        entry = self._effective_entry(entry_price, fill_price)
        return PnLResult(result.value / entry * HUNDRED)

    def compute_pl(self, side, entry_price, current_price, quantity, fill_price=None,
                   status=TradeStatus.FILLED) -> Decimal:
        return self.evaluate_pl(side, entry_price, current_price, quantity, fill_price, status).value

    def compute_percent(self, side, entry_price, current_price, fill_price=None,
                        status=TradeStatus.FILLED) -> Decimal:
        return self.evaluate_percent(side, entry_price, current_price, fill_price, status).value

    @staticmethod
    def _effective_entry(entry_price: Number, fill_price: Number) -> Optional[Decimal]:
        fill = _parse(fill_price)
        if fill is not None and fill > 0:
            return fill
        return _parse(entry_price)

    @staticmethod
    def _check_inputs(side, entry, current, qty) -> Optional[str]:
        if side is None:
            return "unknown side"
        if entry is None or entry <= 0:
            return f"invalid entry price {entry}"
        if current is None or current <= 0:
            return f"invalid current price {current}"
        if qty is None or qty <= 0:
            return f"invalid quantity {qty}"
        return None

    # --------------------------------------------------------
    # TRADE-LEVEL
    # --------------------------------------------------------

    def trade_pl(self, trade: Trade, current_price: Number) -> Decimal:
        """
        P&L for a stored trade.

        Closed/cancelled trades return their realized value; it never
        drifts with later prices.
        """
        if trade.status in (TradeStatus.CLOSED, TradeStatus.CANCELLED):
            return trade.profit_loss if trade.profit_loss is not None else ZERO
        return self.compute_pl(
            trade.side,
            trade.submitted_price,
            current_price,
            trade.quantity,
            trade.fill_price,
            trade.status,
        )

    def trade_percent(self, trade: Trade, current_price: Number) -> Decimal:
        if trade.status in (TradeStatus.CLOSED, TradeStatus.CANCELLED):
            cost = trade.effective_entry_price * trade.quantity
            if trade.profit_loss is None or cost <= 0:
                return ZERO
            return trade.profit_loss / cost * HUNDRED
        return self.compute_percent(
            trade.side,
            trade.submitted_price,
            current_price,
            trade.fill_price,
            trade.status,
        )

    @staticmethod
    def realized_pl(entry_price: Decimal, exit_price: Decimal, quantity: Decimal,
                    side: TradeSide = TradeSide.BUY) -> Decimal:
        """Realized P&L of a closing leg."""
        per_unit = exit_price - entry_price if side == TradeSide.BUY else entry_price - exit_price
        return per_unit * quantity


# ============================================================
# TRADE METRICS
# ============================================================

@dataclass
class TradeMetrics:
    """Portfolio summary across a set of trades."""

    total_trades: int = 0
    closed_trades: int = 0
    filled_trades: int = 0
    total_profit: Decimal = ZERO
    closed_positions_profit: Decimal = ZERO
    unrealized_profit: Decimal = ZERO
    total_volume: Decimal = ZERO
    win_rate_percent: Decimal = ZERO
    profitable_closed_count: int = 0
    notes: List[str] = field(default_factory=list)


def calculate_trade_metrics(
    trades: Iterable[Trade],
    current_prices: Dict[str, Decimal],
    calculator: Optional[PnLCalculator] = None,
) -> TradeMetrics:
    """
    Aggregate P&L over trades.

    Args:
        trades: Trades to summarize
        current_prices: Latest price per symbol
        calculator: P&L calculator (default instance when omitted)
    """
    calculator = calculator or PnLCalculator()
    metrics = TradeMetrics()
    unscored = 0

    for trade in trades:
        metrics.total_trades += 1
        metrics.total_volume += trade.effective_entry_price * trade.quantity

        if trade.status == TradeStatus.CLOSED:
            metrics.closed_trades += 1
            if trade.profit_loss is None:
                metrics.notes.append(f"no realized P&L for closed {trade.symbol} trade {trade.id}")
                unscored += 1
                continue
            metrics.closed_positions_profit += trade.profit_loss
            if trade.profit_loss > 0:
                metrics.profitable_closed_count += 1
        elif trade.status == TradeStatus.FILLED:
            metrics.filled_trades += 1
            price = current_prices.get(trade.symbol)
            if price is None:
                metrics.notes.append(f"no current price for {trade.symbol}")
                continue
            metrics.unrealized_profit += calculator.trade_pl(trade, price)

    metrics.total_profit = metrics.closed_positions_profit + metrics.unrealized_profit
    scored = metrics.closed_trades - unscored
    if scored:
        metrics.win_rate_percent = (
            Decimal(metrics.profitable_closed_count) / Decimal(scored) * HUNDRED
        ).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return metrics
