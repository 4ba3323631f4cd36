"""
Execution Engine - Order Executor.

============================================================
PURPOSE
============================================================
Formats and submits buy/sell orders through the gateway.

FLOW:
1. Format price and quantity for the symbol (market orders send
   no price; the reference price is only used for the notional check)
2. Re-validate the FORMATTED values
3. Submit once; the response is the only source of truth
4. A success without an order id is a failure
5. Persist the trade with the values actually sent

Failures never raise; they return an ExecutionResult with the
raw inputs and a human-readable reason. An accepted order whose
trade could not be stored is still a success (the order exists on
the exchange) and carries the storage error; reconciliation imports
it on the next run.

AUTHORITY BOUNDARIES:
    CAN:
        - Submit orders
        - Create pending trades
    MUST NOT:
        - Decide whether to trade (signals and governance do)
        - Have two submissions in flight for one symbol

============================================================
"""

import asyncio
import logging
from collections import deque
from decimal import Decimal
from typing import Deque, Optional, Set

from core.exceptions import MetadataUnavailableError
from .adapters.base import ExchangeGateway, OrderRequest
from .adapters.errors import ExchangeException
from .precision import PrecisionFormatter, Number, to_decimal
from .repository import RepositoryError, TradeRepository
from .types import ExecutionResult, OrderType, Trade, TradeSide, TradeStatus


logger = logging.getLogger(__name__)


# ============================================================
# FAILURE CODES
# ============================================================

CODE_METADATA_UNAVAILABLE = "METADATA_UNAVAILABLE"
CODE_INVALID_INPUT = "INVALID_INPUT"
CODE_VALIDATION_FAILED = "VALIDATION_FAILED"
CODE_IN_FLIGHT = "ORDER_IN_FLIGHT"
CODE_TIMEOUT = "GATEWAY_TIMEOUT"
CODE_MISSING_ORDER_ID = "MISSING_ORDER_ID"
CODE_REJECTED = "REJECTED"
CODE_PERSIST_FAILED = "PERSIST_FAILED"


# ============================================================
# ORDER EXECUTOR
# ============================================================

class OrderExecutor:
    """Submits formatted orders and records pending trades."""

    def __init__(
        self,
        gateway: ExchangeGateway,
        formatter: PrecisionFormatter,
        repository: TradeRepository,
        timeout_seconds: float = 10.0,
        failure_history: int = 100,
    ):
        self._gateway = gateway
        self._formatter = formatter
        self._repository = repository
        self._timeout = timeout_seconds

        self._in_flight: Set[str] = set()
        self.recent_failures: Deque[ExecutionResult] = deque(maxlen=failure_history)

    # --------------------------------------------------------
    # PUBLIC API
    # --------------------------------------------------------

    async def execute_buy(
        self,
        symbol: str,
        quantity: Number,
        price: Number,
        order_type: OrderType = OrderType.LIMIT,
    ) -> ExecutionResult:
        return await self._execute(symbol, TradeSide.BUY, quantity, price, order_type)

    async def execute_sell(
        self,
        symbol: str,
        quantity: Number,
        price: Number,
        order_type: OrderType = OrderType.LIMIT,
    ) -> ExecutionResult:
        return await self._execute(symbol, TradeSide.SELL, quantity, price, order_type)

    def is_in_flight(self, symbol: str) -> bool:
        return symbol in self._in_flight

    # --------------------------------------------------------
    # EXECUTION
    # --------------------------------------------------------

    async def _execute(
        self,
        symbol: str,
        side: TradeSide,
        quantity: Number,
        price: Number,
        order_type: OrderType,
    ) -> ExecutionResult:
        raw_inputs = {
            "symbol": symbol,
            "side": side.value,
            "order_type": order_type.value,
            "quantity": str(quantity),
            "price": str(price),
        }

        if symbol in self._in_flight:
            return self._fail(f"Order submission already in flight for {symbol}", CODE_IN_FLIGHT, raw_inputs)

        self._in_flight.add(symbol)
        try:
            return await self._submit(symbol, side, quantity, price, order_type, raw_inputs)
        finally:
            self._in_flight.discard(symbol)

    async def _submit(
        self,
        symbol: str,
        side: TradeSide,
        quantity: Number,
        price: Number,
        order_type: OrderType,
        raw_inputs: dict,
    ) -> ExecutionResult:
        is_limit = order_type == OrderType.LIMIT
        formatted_price = None

        # Pre-flight formatting
        try:
            if is_limit:
                formatted_price = await self._formatter.format_price(symbol, price)
                check_price = formatted_price
            else:
                check_price = to_decimal(price)
            formatted_quantity = await self._formatter.format_quantity(symbol, quantity)
            # Validate what will actually be sent
            validation = await self._formatter.validate_order(
                symbol,
                check_price,
                formatted_quantity,
                check_price_step=is_limit,
            )
        except MetadataUnavailableError as e:
            return self._fail(e.message, CODE_METADATA_UNAVAILABLE, raw_inputs)
        except ValueError as e:
            return self._fail(f"Invalid order input: {e}", CODE_INVALID_INPUT, raw_inputs)

        if not validation.valid:
            return self._fail(
                f"Validation failed: {validation.reason}",
                CODE_VALIDATION_FAILED,
                raw_inputs,
                formatted_price,
                formatted_quantity,
            )

        request = OrderRequest(
            symbol=symbol,
            side=side,
            order_type=order_type,
            quantity=formatted_quantity,
            price=formatted_price,
        )

        try:
            response = await asyncio.wait_for(self._gateway.place_order(request), self._timeout)
        except ExchangeException as e:
            return self._fail(
                f"Gateway error: {e.error.message}",
                e.error.code,
                raw_inputs,
                formatted_price,
                formatted_quantity,
            )
        except asyncio.TimeoutError:
            return self._fail(
                f"Gateway timeout after {self._timeout}s",
                CODE_TIMEOUT,
                raw_inputs,
                formatted_price,
                formatted_quantity,
            )

        if not response.success:
            return self._fail(
                f"Order rejected: {response.error_message or 'unknown reason'}",
                response.error_code or CODE_REJECTED,
                raw_inputs,
                formatted_price,
                formatted_quantity,
            )
        if not response.order_id:
            return self._fail(
                "Exchange reported success without an order id",
                CODE_MISSING_ORDER_ID,
                raw_inputs,
                formatted_price,
                formatted_quantity,
            )

        trade = Trade(
            symbol=symbol,
            side=side,
            order_type=order_type,
            quantity=Decimal(formatted_quantity),
            submitted_price=Decimal(formatted_price) if is_limit else check_price,
            status=TradeStatus.PENDING,
            exchange_order_id=response.order_id,
        )
        try:
            trade = self._repository.upsert_trade(trade)
        except RepositoryError as e:
            logger.error(
                f"Order accepted but not stored | symbol={symbol} | order_id={response.order_id} | "
                f"error={e.message}"
            )
            return ExecutionResult(
                success=True,
                order_id=response.order_id,
                error=f"Order {response.order_id} accepted but not stored: {e.message}",
                error_code=CODE_PERSIST_FAILED,
                formatted_price=formatted_price,
                formatted_quantity=formatted_quantity,
                raw_inputs=raw_inputs,
            )

        logger.info(
            f"Order submitted | symbol={symbol} | side={side.value} | type={order_type.value} | "
            f"qty={formatted_quantity} | price={formatted_price} | order_id={response.order_id}"
        )
        return ExecutionResult(
            success=True,
            order_id=response.order_id,
            trade=trade,
            formatted_price=formatted_price,
            formatted_quantity=formatted_quantity,
            raw_inputs=raw_inputs,
        )

    def _fail(
        self,
        reason: str,
        code: str,
        raw_inputs: dict,
        formatted_price: Optional[str] = None,
        formatted_quantity: Optional[str] = None,
    ) -> ExecutionResult:
        result = ExecutionResult.failure(
            error=reason,
            error_code=code,
            raw_inputs=raw_inputs,
            formatted_price=formatted_price,
            formatted_quantity=formatted_quantity,
        )
        self.recent_failures.append(result)
        logger.warning(
            f"Order execution failed | symbol={raw_inputs.get('symbol')} | code={code} | "
            f"reason={reason} | raw_inputs={raw_inputs}"
        )
        return result
