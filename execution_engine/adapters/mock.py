"""
Exchange Gateway - Mock Gateway.

============================================================
PURPOSE
============================================================
Deterministic in-memory gateway for tests and dry runs.

FEATURES:
- Configurable instruments, prices, candles and balances
- Configurable fill behavior
- Error injection per operation
- Missing-order-id injection
- Call counting

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, List
import uuid

from core.clock import ClockProtocol, SystemClock
from ..types import Candle, OrderType, TradeSide
from .base import (
    ExchangeGateway,
    InstrumentInfo,
    Ticker,
    OrderRequest,
    PlaceOrderResult,
    ExchangeOrder,
    CoinBalance,
    WalletBalance,
)
from .errors import ExchangeError, ExchangeException, create_network_error


logger = logging.getLogger(__name__)


# ============================================================
# MOCK CONFIGURATION
# ============================================================

@dataclass
class MockConfig:
    """Configuration for mock gateway."""

    latency_seconds: float = 0.0
    """Simulated latency per call."""

    default_price: Decimal = Decimal("100")
    """Price for symbols without an explicit price."""

    fill_limit_orders: bool = False
    """Whether limit orders fill immediately at their price."""

    fill_market_orders: bool = True
    """Whether market orders fill immediately at the current price."""

    quote_coin: str = "USDT"
    """Quote currency used for balances."""

    initial_quote_balance: Decimal = Decimal("1000")
    """Initial quote balance."""


# ============================================================
# MOCK EXCHANGE GATEWAY
# ============================================================

class MockExchangeGateway(ExchangeGateway):
    """
    Mock exchange gateway.

    Orders are kept in insertion order and exposed through
    get_order_history/get_open_orders like a real exchange.
    """

    def __init__(self, config: MockConfig = None, clock: ClockProtocol = None):
        self._config = config or MockConfig()
        self._clock = clock or SystemClock()

        self.instruments: Dict[str, InstrumentInfo] = {}
        self.prices: Dict[str, Decimal] = {}
        self.candles: Dict[str, List[Candle]] = {}
        self.orders: Dict[str, ExchangeOrder] = {}
        self.balances: Dict[str, Decimal] = {
            self._config.quote_coin: self._config.initial_quote_balance,
        }
        self.placed_requests: List[OrderRequest] = []
        self.call_counts: Dict[str, int] = {}

        self._forced_errors: Dict[str, ExchangeError] = {}
        self._omit_next_order_id = False
        self._order_counter = 0

    @property
    def exchange_id(self) -> str:
        return "mock"

    # --------------------------------------------------------
    # STATE SETUP
    # --------------------------------------------------------

    def set_instrument(
        self,
        symbol: str,
        tick_size: str = "0.01",
        base_precision: str = "0.0001",
        min_order_qty: str = "0",
        min_order_amount: str = "10",
    ) -> None:
        base = symbol[:-len(self._config.quote_coin)] if symbol.endswith(self._config.quote_coin) else symbol
        self.instruments[symbol] = InstrumentInfo(
            symbol=symbol,
            tick_size=Decimal(tick_size),
            base_precision=Decimal(base_precision),
            min_order_qty=Decimal(min_order_qty),
            min_order_amount=Decimal(min_order_amount),
            base_coin=base,
            quote_coin=self._config.quote_coin,
        )

    def set_price(self, symbol: str, price) -> None:
        self.prices[symbol] = Decimal(str(price))

    def set_candles(self, symbol: str, candles: List[Candle]) -> None:
        self.candles[symbol] = list(candles)

    def set_balance(self, coin: str, amount) -> None:
        self.balances[coin.upper()] = Decimal(str(amount))

    def add_order(
        self,
        symbol: str,
        side: TradeSide,
        quantity,
        price,
        status: str = "Filled",
        avg_price=None,
        order_id: str = None,
        created_at: datetime = None,
        order_type: OrderType = OrderType.LIMIT,
    ) -> ExchangeOrder:
        """Insert an order directly into the exchange history."""
        order_id = order_id or self._next_order_id()
        quantity = Decimal(str(quantity))
        order = ExchangeOrder(
            order_id=order_id,
            symbol=symbol,
            side=side,
            order_type=order_type,
            status=status,
            quantity=quantity,
            price=Decimal(str(price)),
            avg_price=Decimal(str(avg_price)) if avg_price is not None else None,
            executed_qty=quantity if status == "Filled" else Decimal("0"),
            created_at=created_at or self._clock.now(),
            updated_at=created_at or self._clock.now(),
        )
        self.orders[order_id] = order
        return order

    def fill_order(self, order_id: str, avg_price=None, partial_qty=None) -> ExchangeOrder:
        """Mark an order filled (or partially filled)."""
        order = self.orders[order_id]
        order.avg_price = Decimal(str(avg_price)) if avg_price is not None else order.price
        if partial_qty is not None:
            order.status = "PartiallyFilled"
            order.executed_qty = Decimal(str(partial_qty))
        else:
            order.status = "Filled"
            order.executed_qty = order.quantity
        order.updated_at = self._clock.now()
        return order

    def cancel_order(self, order_id: str) -> ExchangeOrder:
        order = self.orders[order_id]
        order.status = "Cancelled"
        order.updated_at = self._clock.now()
        return order

    # --------------------------------------------------------
    # ERROR INJECTION
    # --------------------------------------------------------

    def fail_next(self, operation: str, error: ExchangeError = None) -> None:
        """Make the next call of an operation raise ExchangeException."""
        self._forced_errors[operation] = error or create_network_error(
            "mock", f"Injected failure for {operation}", operation
        )

    def omit_next_order_id(self) -> None:
        """Make the next place_order succeed without an order id."""
        self._omit_next_order_id = True

    async def _enter(self, operation: str) -> None:
        self.call_counts[operation] = self.call_counts.get(operation, 0) + 1
        if self._config.latency_seconds:
            await asyncio.sleep(self._config.latency_seconds)
        error = self._forced_errors.pop(operation, None)
        if error:
            raise ExchangeException(error)

    def _next_order_id(self) -> str:
        self._order_counter += 1
        return f"mock-{self._order_counter:06d}-{uuid.uuid4().hex[:6]}"

    # --------------------------------------------------------
    # MARKET DATA
    # --------------------------------------------------------

    async def get_instrument_info(self, symbol: str) -> InstrumentInfo:
        await self._enter("get_instrument_info")
        if symbol not in self.instruments:
            self.set_instrument(symbol)
        return self.instruments[symbol]

    async def get_ticker_price(self, symbol: str) -> Ticker:
        await self._enter("get_ticker_price")
        return Ticker(
            symbol=symbol,
            last_price=self.prices.get(symbol, self._config.default_price),
            timestamp=self._clock.now(),
        )

    async def get_candles(self, symbol: str, interval: str, count: int) -> List[Candle]:
        await self._enter("get_candles")
        return list(self.candles.get(symbol, []))[-count:]

    # --------------------------------------------------------
    # ORDERS
    # --------------------------------------------------------

    async def place_order(self, request: OrderRequest) -> PlaceOrderResult:
        await self._enter("place_order")
        self.placed_requests.append(request)

        if request.order_type == OrderType.MARKET:
            price = self.prices.get(request.symbol, self._config.default_price)
            fill = self._config.fill_market_orders
        else:
            price = Decimal(request.price)
            fill = self._config.fill_limit_orders

        order = self.add_order(
            symbol=request.symbol,
            side=request.side,
            quantity=request.quantity,
            price=price,
            status="Filled" if fill else "New",
            avg_price=price if fill else None,
            order_type=request.order_type,
        )

        if self._omit_next_order_id:
            self._omit_next_order_id = False
            logger.debug(f"Mock order placed without id | symbol={request.symbol}")
            return PlaceOrderResult(success=True, order_id=None, raw={})

        logger.debug(f"Mock order placed | id={order.order_id} | symbol={request.symbol}")
        return PlaceOrderResult(
            success=True,
            order_id=order.order_id,
            raw={"orderId": order.order_id},
        )

    async def get_order_history(self, since: datetime) -> List[ExchangeOrder]:
        await self._enter("get_order_history")
        return [o for o in self.orders.values() if o.created_at is None or o.created_at >= since]

    async def get_open_orders(self) -> List[ExchangeOrder]:
        await self._enter("get_open_orders")
        return [o for o in self.orders.values() if o.status in ("New", "PartiallyFilled")]

    # --------------------------------------------------------
    # ACCOUNT
    # --------------------------------------------------------

    async def get_wallet_balance(self) -> WalletBalance:
        await self._enter("get_wallet_balance")
        coins = {
            coin: CoinBalance(coin=coin, wallet_balance=amount, free=amount)
            for coin, amount in self.balances.items()
        }
        quote = self._config.quote_coin
        total = self.balances.get(quote, Decimal("0"))
        for coin, amount in self.balances.items():
            if coin == quote:
                continue
            total += amount * self.prices.get(f"{coin}{quote}", Decimal("0"))
        return WalletBalance(coins=coins, total_equity_usd=total)
