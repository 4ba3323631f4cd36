"""
Execution Engine - Position Closer.

============================================================
PURPOSE
============================================================
Closes open buy positions with a sell order and records the
realized P&L on the buy trade.

MODES:
- Manual: one trade, market sell by default; a positive premium
  places a limit sell above the current price instead
- End of day: every filled buy whose profit reaches the
  configured premium is sold at market, when auto-close is enabled

A market sell closes the buy at once through the state machine
with P&L = (current price - effective entry) x quantity. A limit
sell only links the buy to the sell order (closing_order_id); the
buy stays FILLED until reconciliation sees that sell filled, and is
released again if the sell is cancelled. The sell leg is recorded
by the executor as its own trade.

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from .adapters.base import ExchangeGateway
from .adapters.errors import ExchangeException
from .config import TradingConfig
from .executor import OrderExecutor
from .pnl import PnLCalculator
from .repository import TradeRepository
from .state_machine import apply_transition
from .types import OrderType, Trade, TradeFilter, TradeSide, TradeStatus


logger = logging.getLogger(__name__)


HUNDRED = Decimal("100")


@dataclass
class CloseResult:
    """Outcome of closing one position."""

    trade_id: str
    success: bool
    reason: str = ""
    symbol: Optional[str] = None
    exit_price: Optional[Decimal] = None
    profit_loss: Optional[Decimal] = None
    sell_order_id: Optional[str] = None

    pending: bool = False
    """Limit sell placed; the buy closes once the sell fills."""


@dataclass
class EndOfDayReport:
    """Outcome of an end-of-day close pass."""

    evaluated: int = 0
    results: List[CloseResult] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def closed_count(self) -> int:
        return sum(1 for r in self.results if r.success)


class PositionCloser:
    """Sells open buy positions and books their realized P&L."""

    def __init__(
        self,
        gateway: ExchangeGateway,
        executor: OrderExecutor,
        repository: TradeRepository,
        config: TradingConfig,
        calculator: Optional[PnLCalculator] = None,
    ):
        self._gateway = gateway
        self._executor = executor
        self._repository = repository
        self._config = config
        self._calculator = calculator or PnLCalculator()
        self._timeout = config.exchange.timeout_seconds

    # --------------------------------------------------------
    # MANUAL CLOSE
    # --------------------------------------------------------

    async def close_position(
        self,
        trade_id: str,
        premium_percent: Optional[Decimal] = None,
    ) -> CloseResult:
        """
        Close one filled buy trade.

        Args:
            trade_id: Local trade id
            premium_percent: Premium over current price for a limit sell
                (default manual_close_premium_percent; 0 sells at market)

        Returns:
            CloseResult; realized P&L is set for market sells, a limit
            sell returns pending=True
        """
        trade = self._repository.get_trade(trade_id)
        if trade is None:
            return self._reject(trade_id, None, "Trade not found")
        if trade.side != TradeSide.BUY:
            return self._reject(trade_id, trade.symbol, "Only buy positions can be closed")
        if trade.status != TradeStatus.FILLED:
            return self._reject(
                trade_id, trade.symbol,
                f"Trade status is {trade.status.value}, expected filled",
            )
        if trade.closing_order_id:
            return self._reject(
                trade_id, trade.symbol,
                f"Close already pending on sell order {trade.closing_order_id}",
            )

        try:
            ticker = await asyncio.wait_for(
                self._gateway.get_ticker_price(trade.symbol), self._timeout,
            )
        except ExchangeException as e:
            return self._reject(trade_id, trade.symbol, f"Price unavailable: {e.error.message}")
        except asyncio.TimeoutError:
            return self._reject(trade_id, trade.symbol, "Price unavailable: timeout")

        if premium_percent is None:
            premium_percent = self._config.manual_close_premium_percent
        premium_percent = Decimal(str(premium_percent))

        if premium_percent == 0:
            return await self._sell_at_market(trade, ticker.last_price)
        sell_price = ticker.last_price * (1 + premium_percent / HUNDRED)
        return await self._place_limit_close(trade, sell_price)

    async def _sell_at_market(self, trade: Trade, current_price: Decimal) -> CloseResult:
        result = await self._executor.execute_sell(
            trade.symbol,
            trade.quantity,
            current_price,
            order_type=OrderType.MARKET,
        )
        if not result.success:
            return self._reject(trade.id, trade.symbol, f"Sell failed: {result.error}")

        profit = self._calculator.realized_pl(trade.effective_entry_price, current_price, trade.quantity)
        closed = apply_transition(
            trade,
            TradeStatus.CLOSED,
            profit_loss=profit,
            closing_order_id=result.order_id,
            reason=f"market sell {result.order_id}",
        )
        self._repository.upsert_trade(closed)

        logger.info(
            f"Position closed | trade_id={trade.id} | symbol={trade.symbol} | "
            f"entry={trade.effective_entry_price} | exit={current_price} | pl={profit}"
        )
        return CloseResult(
            trade_id=trade.id,
            success=True,
            symbol=trade.symbol,
            exit_price=current_price,
            profit_loss=profit,
            sell_order_id=result.order_id,
        )

    async def _place_limit_close(self, trade: Trade, sell_price: Decimal) -> CloseResult:
        result = await self._executor.execute_sell(
            trade.symbol,
            trade.quantity,
            sell_price,
            order_type=OrderType.LIMIT,
        )
        if not result.success:
            return self._reject(trade.id, trade.symbol, f"Sell failed: {result.error}")

        limit_price = Decimal(result.formatted_price)
        self._repository.upsert_trade(trade.copy_with(
            closing_order_id=result.order_id,
            notes=f"close pending: limit sell {result.order_id} @ {result.formatted_price}",
        ))

        logger.info(
            f"Close pending | trade_id={trade.id} | symbol={trade.symbol} | "
            f"sell_order_id={result.order_id} | limit={limit_price}"
        )
        return CloseResult(
            trade_id=trade.id,
            success=True,
            reason="limit sell placed; position closes when it fills",
            symbol=trade.symbol,
            exit_price=limit_price,
            sell_order_id=result.order_id,
            pending=True,
        )

    @staticmethod
    def _reject(trade_id: str, symbol: Optional[str], reason: str) -> CloseResult:
        logger.warning(f"Close rejected | trade_id={trade_id} | symbol={symbol} | reason={reason}")
        return CloseResult(trade_id=trade_id, success=False, reason=reason, symbol=symbol)

    # --------------------------------------------------------
    # END OF DAY
    # --------------------------------------------------------

    async def close_all_at_end_of_day(self) -> EndOfDayReport:
        """
        Close every filled buy whose profit % reaches eod_close_premium_percent.

        Does nothing unless auto_close_at_end_of_day is enabled. Each
        position is sold at market; buys with a pending limit close
        are left to that order.
        """
        report = EndOfDayReport()
        if not self._config.auto_close_at_end_of_day:
            return report

        open_buys = self._repository.query_trades(TradeFilter(
            side=TradeSide.BUY,
            statuses=frozenset({TradeStatus.FILLED}),
        ))
        threshold = self._config.eod_close_premium_percent
        prices = {}

        for trade in open_buys:
            report.evaluated += 1
            if trade.closing_order_id:
                report.skipped.append(trade.id)
                continue
            if trade.symbol not in prices:
                try:
                    ticker = await asyncio.wait_for(
                        self._gateway.get_ticker_price(trade.symbol), self._timeout,
                    )
                    prices[trade.symbol] = ticker.last_price
                except (ExchangeException, asyncio.TimeoutError) as e:
                    logger.warning(f"End-of-day price unavailable | symbol={trade.symbol} | error={e}")
                    prices[trade.symbol] = None

            current = prices[trade.symbol]
            if current is None:
                report.skipped.append(trade.id)
                continue

            profit_percent = self._calculator.trade_percent(trade, current)
            if profit_percent < threshold:
                report.skipped.append(trade.id)
                continue

            report.results.append(await self._sell_at_market(trade, current))

        logger.info(
            f"End-of-day close | evaluated={report.evaluated} | closed={report.closed_count} | "
            f"skipped={len(report.skipped)}"
        )
        return report
