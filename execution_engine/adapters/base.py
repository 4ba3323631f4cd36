"""
Exchange Gateway - Base.

============================================================
PURPOSE
============================================================
Abstract interface for the exchange gateway collaborator.

DESIGN PRINCIPLES:
- Every response shape is an explicit dataclass
- The core never consumes untyped exchange payloads
- Fully testable with the mock gateway

OPERATIONS:
- get_instrument_info(symbol)
- get_ticker_price(symbol)
- get_candles(symbol, interval, count)
- place_order(request)
- get_order_history(since)
- get_open_orders()
- get_wallet_balance()

Failures raise ExchangeException.

============================================================
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List

from ..types import Candle, OrderType, TradeSide, TradeStatus


logger = logging.getLogger(__name__)


# ============================================================
# STATUS MAPPING
# ============================================================

ORDER_STATUS_MAP: Dict[str, TradeStatus] = {
    "NEW": TradeStatus.PENDING,
    "CREATED": TradeStatus.PENDING,
    "UNTRIGGERED": TradeStatus.PENDING,
    "ACTIVE": TradeStatus.PENDING,
    "PARTIALLYFILLED": TradeStatus.PARTIAL_FILLED,
    "PARTIALLY_FILLED": TradeStatus.PARTIAL_FILLED,
    "FILLED": TradeStatus.FILLED,
    "CANCELLED": TradeStatus.CANCELLED,
    "CANCELED": TradeStatus.CANCELLED,
    "REJECTED": TradeStatus.CANCELLED,
    "DEACTIVATED": TradeStatus.CANCELLED,
    "PARTIALLYFILLEDCANCELED": TradeStatus.CANCELLED,
}


def map_order_status(status: str) -> TradeStatus:
    """
    Map an exchange order status string to TradeStatus.

    Args:
        status: Exchange status (e.g. "PartiallyFilled")

    Returns:
        TradeStatus (unknown values map to PENDING)
    """
    return ORDER_STATUS_MAP.get(status.replace(" ", "").upper(), TradeStatus.PENDING)


# ============================================================
# GATEWAY PAYLOAD TYPES
# ============================================================

@dataclass
class InstrumentInfo:
    """Raw instrument rules as reported by the exchange."""

    symbol: str
    tick_size: Optional[Decimal] = None
    base_precision: Optional[Decimal] = None
    min_order_qty: Optional[Decimal] = None
    min_order_amount: Optional[Decimal] = None
    base_coin: Optional[str] = None
    quote_coin: Optional[str] = None


@dataclass
class Ticker:
    """Last traded price for a symbol."""

    symbol: str
    last_price: Decimal
    timestamp: Optional[datetime] = None


@dataclass
class OrderRequest:
    """Request to place an order. Price and quantity are already formatted."""

    symbol: str
    side: TradeSide
    order_type: OrderType
    quantity: str
    price: Optional[str] = None
    client_order_id: Optional[str] = None


@dataclass
class PlaceOrderResult:
    """Response from order placement."""

    success: bool
    order_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExchangeOrder:
    """One order from the exchange's authoritative history."""

    order_id: str
    symbol: str
    side: TradeSide
    order_type: OrderType
    status: str
    """Raw exchange status string."""

    quantity: Decimal
    price: Decimal
    avg_price: Optional[Decimal] = None
    executed_qty: Decimal = Decimal("0")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def trade_status(self) -> TradeStatus:
        return map_order_status(self.status)

    @property
    def fill_price(self) -> Optional[Decimal]:
        """Average fill price when the exchange reports one."""
        if self.avg_price is not None and self.avg_price > 0:
            return self.avg_price
        return None


@dataclass
class CoinBalance:
    """Balance of one coin."""

    coin: str
    wallet_balance: Decimal
    free: Decimal = Decimal("0")
    usd_value: Optional[Decimal] = None


@dataclass
class WalletBalance:
    """Account wallet snapshot."""

    coins: Dict[str, CoinBalance] = field(default_factory=dict)
    total_equity_usd: Optional[Decimal] = None

    def balance_of(self, coin: str) -> Decimal:
        entry = self.coins.get(coin.upper())
        return entry.wallet_balance if entry else Decimal("0")


# ============================================================
# EXCHANGE GATEWAY
# ============================================================

class ExchangeGateway(ABC):
    """
    Abstract exchange gateway.

    Implementations must raise ExchangeException on failure
    and must not return partially parsed data.
    """

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    @abstractmethod
    def exchange_id(self) -> str:
        """Exchange identifier."""
        pass

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    async def connect(self) -> None:
        """Open network resources."""

    async def disconnect(self) -> None:
        """Release network resources."""

    async def __aenter__(self) -> "ExchangeGateway":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    # --------------------------------------------------------
    # MARKET DATA
    # --------------------------------------------------------

    @abstractmethod
    async def get_instrument_info(self, symbol: str) -> InstrumentInfo:
        """Get trading rules for a symbol."""
        pass

    @abstractmethod
    async def get_ticker_price(self, symbol: str) -> Ticker:
        """Get last traded price."""
        pass

    @abstractmethod
    async def get_candles(self, symbol: str, interval: str, count: int) -> List[Candle]:
        """Get recent candles, oldest first."""
        pass

    # --------------------------------------------------------
    # ORDERS
    # --------------------------------------------------------

    @abstractmethod
    async def place_order(self, request: OrderRequest) -> PlaceOrderResult:
        """Submit an order."""
        pass

    @abstractmethod
    async def get_order_history(self, since: datetime) -> List[ExchangeOrder]:
        """Get orders created since the given time."""
        pass

    @abstractmethod
    async def get_open_orders(self) -> List[ExchangeOrder]:
        """Get currently open orders."""
        pass

    # --------------------------------------------------------
    # ACCOUNT
    # --------------------------------------------------------

    @abstractmethod
    async def get_wallet_balance(self) -> WalletBalance:
        """Get wallet balance snapshot."""
        pass
