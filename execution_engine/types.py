"""
Execution Engine - Types.

============================================================
PURPOSE
============================================================
All type definitions shared by the trading core.

- Trade sides, order types and the trade status lifecycle
- Instrument trading rules
- Trades, signals and derived position views
- Structured execution results

Monetary values are Decimal throughout.

============================================================
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any, List, FrozenSet
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_trade_id() -> str:
    return f"trd_{uuid.uuid4().hex[:16]}"


def new_signal_id() -> str:
    return f"sig_{uuid.uuid4().hex[:16]}"


# ============================================================
# ORDER TYPES
# ============================================================

class TradeSide(Enum):
    """Trade side."""

    BUY = "buy"
    SELL = "sell"


class OrderType(Enum):
    """Order type."""

    MARKET = "market"
    """Execute at current market price."""

    LIMIT = "limit"
    """Execute at specified price or better."""


# ============================================================
# TRADE LIFECYCLE STATES
# ============================================================

class TradeStatus(Enum):
    """
    Trade lifecycle status.

    State Machine:

        PENDING ──────► CANCELLED
           │
           ├──► PARTIAL_FILLED ──┐
           │         │           │
           ▼         ▼           │
        FILLED ◄─────┘           │
           │                     │
           ▼                     │
        CLOSED ◄─────────────────┘

    CLOSED and CANCELLED are terminal.
    """

    PENDING = "pending"
    """Submitted, awaiting fill."""

    PARTIAL_FILLED = "partial_filled"
    """Order partially executed."""

    FILLED = "filled"
    """Order fully executed, position open."""

    CLOSED = "closed"
    """Position closed, realized P&L recorded."""

    CANCELLED = "cancelled"
    """Order cancelled before fill."""

    def is_terminal(self) -> bool:
        """Check if this is a terminal state."""
        return self in (TradeStatus.CLOSED, TradeStatus.CANCELLED)

    def is_open(self) -> bool:
        """Check if the trade still counts as an open position."""
        return self in OPEN_STATUSES

    def has_fill(self) -> bool:
        """Check if the exchange has reported any fill."""
        return self in (TradeStatus.FILLED, TradeStatus.PARTIAL_FILLED, TradeStatus.CLOSED)


OPEN_STATUSES: FrozenSet[TradeStatus] = frozenset({
    TradeStatus.PENDING,
    TradeStatus.PARTIAL_FILLED,
    TradeStatus.FILLED,
})


# ============================================================
# INSTRUMENT RULES
# ============================================================

@dataclass(frozen=True)
class Instrument:
    """
    Per-symbol trading rules.

    Never mutated; a refresh replaces the whole object.
    """

    symbol: str
    """Trading symbol (e.g. BTCUSDT)."""

    tick_size: Decimal
    """Smallest price increment."""

    base_precision: Decimal
    """Smallest quantity increment."""

    min_notional: Decimal
    """Minimum price x quantity."""

    min_order_qty: Decimal = Decimal("0")
    """Minimum order quantity."""

    price_decimals: Optional[int] = None
    """Rendered price decimals override."""

    quantity_decimals: Optional[int] = None
    """Rendered quantity decimals override."""

    fetched_at: datetime = field(default_factory=_utcnow)
    """When the rules were fetched."""

    def __post_init__(self):
        if self.tick_size <= 0:
            raise ValueError(f"tick_size must be positive for {self.symbol}")
        if self.base_precision <= 0:
            raise ValueError(f"base_precision must be positive for {self.symbol}")


# ============================================================
# MARKET DATA
# ============================================================

@dataclass(frozen=True)
class Candle:
    """One OHLCV candle."""

    open_time: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal = Decimal("0")


# ============================================================
# TRADE
# ============================================================

@dataclass
class Trade:
    """
    Local trade record.

    Execution writes status/fill_price/exchange_order_id.
    Reconciliation and position closing write status/profit_loss.
    """

    symbol: str
    side: TradeSide
    quantity: Decimal
    submitted_price: Decimal
    order_type: OrderType = OrderType.LIMIT
    status: TradeStatus = TradeStatus.PENDING

    fill_price: Optional[Decimal] = None
    """Set once the exchange reports a fill."""

    profit_loss: Optional[Decimal] = None
    """Realized P&L, meaningful only for closed/cancelled trades."""

    exchange_order_id: Optional[str] = None
    """External correlation key."""

    closing_order_id: Optional[str] = None
    """Exchange order id of the sell that closed this position."""

    id: str = field(default_factory=new_trade_id)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    notes: Optional[str] = None
    """Free-text diagnostics (import source, close reason)."""

    @property
    def effective_entry_price(self) -> Decimal:
        """Fill price when reported and positive, else submitted price."""
        if self.fill_price is not None and self.fill_price > 0:
            return self.fill_price
        return self.submitted_price

    @property
    def notional(self) -> Decimal:
        return self.effective_entry_price * self.quantity

    def copy_with(self, **changes) -> "Trade":
        """Return a modified copy with a fresh updated_at."""
        changes.setdefault("updated_at", _utcnow())
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side.value,
            "order_type": self.order_type.value,
            "quantity": str(self.quantity),
            "submitted_price": str(self.submitted_price),
            "fill_price": str(self.fill_price) if self.fill_price is not None else None,
            "status": self.status.value,
            "profit_loss": str(self.profit_loss) if self.profit_loss is not None else None,
            "exchange_order_id": self.exchange_order_id,
            "closing_order_id": self.closing_order_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "notes": self.notes,
        }


@dataclass
class TradeFilter:
    """Query filter for the trade repository."""

    symbol: Optional[str] = None
    side: Optional[TradeSide] = None
    statuses: Optional[FrozenSet[TradeStatus]] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None

    def matches(self, trade: Trade) -> bool:
        if self.symbol is not None and trade.symbol != self.symbol:
            return False
        if self.side is not None and trade.side != self.side:
            return False
        if self.statuses is not None and trade.status not in self.statuses:
            return False
        if self.created_after is not None and trade.created_at < self.created_after:
            return False
        if self.created_before is not None and trade.created_at > self.created_before:
            return False
        return True


# ============================================================
# SIGNAL
# ============================================================

class SignalKind(Enum):
    """Origin of an entry signal."""

    SUPPORT_ENTRY = "support_entry"
    """New position at a detected support level."""

    AVERAGING_DOWN = "averaging_down"
    """Additional buy below the last purchase price."""


@dataclass
class Signal:
    """Buy entry proposal produced by the signal generator."""

    symbol: str
    price: Decimal
    """Formatted entry price."""

    confidence: float
    """Soft strength indicator in [0, 1], used for ranking only."""

    reasoning: str
    side: TradeSide = TradeSide.BUY
    kind: SignalKind = SignalKind.SUPPORT_ENTRY
    support_level: Optional[Decimal] = None
    processed: bool = False
    id: str = field(default_factory=new_signal_id)
    created_at: datetime = field(default_factory=_utcnow)


# ============================================================
# EXECUTION RESULT
# ============================================================

@dataclass
class ExecutionResult:
    """Structured outcome of a buy/sell submission."""

    success: bool
    order_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    trade: Optional[Trade] = None
    """Persisted trade on success."""

    formatted_price: Optional[str] = None
    formatted_quantity: Optional[str] = None

    raw_inputs: Dict[str, Any] = field(default_factory=dict)
    """Unformatted inputs, kept for diagnosis on failure."""

    @classmethod
    def failure(
        cls,
        error: str,
        error_code: str,
        raw_inputs: Dict[str, Any],
        formatted_price: Optional[str] = None,
        formatted_quantity: Optional[str] = None,
    ) -> "ExecutionResult":
        return cls(
            success=False,
            error=error,
            error_code=error_code,
            raw_inputs=raw_inputs,
            formatted_price=formatted_price,
            formatted_quantity=formatted_quantity,
        )


# ============================================================
# POSITION VIEW
# ============================================================

@dataclass
class PositionView:
    """Derived aggregation of one symbol's open trades."""

    symbol: str
    open_trades: List[Trade] = field(default_factory=list)

    @property
    def position_count(self) -> int:
        return len(self.open_trades)

    @property
    def total_quantity(self) -> Decimal:
        return sum((t.quantity for t in self.open_trades), Decimal("0"))

    @property
    def exposure(self) -> Decimal:
        """Quote-currency value at entry."""
        return sum((t.notional for t in self.open_trades), Decimal("0"))

    @property
    def entry_prices(self) -> List[Decimal]:
        return [t.effective_entry_price for t in self.open_trades]

    @property
    def last_purchase(self) -> Optional[Trade]:
        """Most recent buy with a confirmed fill."""
        filled = [
            t for t in self.open_trades
            if t.side == TradeSide.BUY and t.status in (TradeStatus.FILLED, TradeStatus.PARTIAL_FILLED)
        ]
        if not filled:
            return None
        return max(filled, key=lambda t: t.created_at)
