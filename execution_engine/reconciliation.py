"""
Execution Engine - Reconciliation.

============================================================
PURPOSE
============================================================
Diffs the exchange's authoritative order history against
local trades and drives corrective updates.

CLASSIFICATION:
- MISSING_FROM_LOCAL: exchange order with no local trade (imported)
- EXTRA_IN_LOCAL: local trade with no exchange order (flagged only)
- STATUS_MISMATCH: local status behind exchange (moved forward)
- PRICE_MISMATCH: fill price differs by more than 0.01% (updated)
- AMBIGUOUS: exchange status would need a back-transition (reported
  with a ReconciliationMismatchError attached)
- POSITION_CLOSED: filled buy closed by its own limit sell, a matching
  sell, or zero balance (no P&L recorded, exit price unknown)
- STALE_PENDING: local pending trade without order id (cancelled, opt-in)

PENDING CLOSES:
- A buy whose closing_order_id points at a live sell stays FILLED
- The sell filling closes the buy at the sell price
- The sell being cancelled releases the buy (closing_order_id cleared)

PRINCIPLES:
- The exchange is ground truth
- Additive and corrective, never destructive
- Convergent: a second run on unchanged state writes nothing

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Set

from core.clock import ClockProtocol, SystemClock
from core.exceptions import GatewayError, ReconciliationMismatchError
from .adapters.base import ExchangeGateway, ExchangeOrder
from .adapters.errors import ExchangeException
from .pnl import PnLCalculator
from .repository import TradeRepository
from .state_machine import TradeStateMachine, apply_transition
from .types import Trade, TradeFilter, TradeSide, TradeStatus


logger = logging.getLogger(__name__)


PRICE_MISMATCH_TOLERANCE_PERCENT = Decimal("0.01")
CLOSE_QTY_TOLERANCE = Decimal("0.05")
DEFAULT_LOOKBACK = timedelta(hours=168)


def price_differs(local: Decimal, exchange: Decimal) -> bool:
    """True when two fill prices differ by more than the relative tolerance."""
    if exchange <= 0:
        return local != exchange
    return abs(local - exchange) / exchange * Decimal("100") > PRICE_MISMATCH_TOLERANCE_PERCENT


# ============================================================
# REPORT TYPES
# ============================================================

class DiscrepancyType(Enum):
    """Type of reconciliation finding."""

    MISSING_FROM_LOCAL = "MISSING_FROM_LOCAL"
    EXTRA_IN_LOCAL = "EXTRA_IN_LOCAL"
    STATUS_MISMATCH = "STATUS_MISMATCH"
    PRICE_MISMATCH = "PRICE_MISMATCH"
    AMBIGUOUS = "AMBIGUOUS"
    POSITION_CLOSED = "POSITION_CLOSED"
    STALE_PENDING = "STALE_PENDING"


@dataclass
class ReconciliationEntry:
    """One finding."""

    type: DiscrepancyType
    symbol: str
    detail: str
    order_id: Optional[str] = None
    trade_id: Optional[str] = None
    corrected: bool = False
    error: Optional[ReconciliationMismatchError] = None
    """Set for findings that need a manual fix."""


@dataclass
class ReconciliationReport:
    """Result of one reconciliation run. Built fresh, never persisted."""

    run_id: str
    started_at: datetime
    lookback: timedelta
    completed_at: Optional[datetime] = None

    exchange_orders_count: int = 0
    local_trades_count: int = 0
    matched: int = 0
    missing_from_local: int = 0
    extra_in_local: int = 0
    status_mismatches: int = 0
    price_mismatches: int = 0
    ambiguous: int = 0
    positions_closed: int = 0
    stale_cancelled: int = 0

    writes: int = 0
    """Corrective writes performed by this run."""

    entries: List[ReconciliationEntry] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return self.writes == 0 and self.extra_in_local == 0 and self.ambiguous == 0

    def entries_of(self, kind: DiscrepancyType) -> List[ReconciliationEntry]:
        return [e for e in self.entries if e.type == kind]

    @property
    def errors(self) -> List[ReconciliationMismatchError]:
        return [e.error for e in self.entries if e.error is not None]

    def summary(self) -> Dict[str, int]:
        return {
            "exchange_orders": self.exchange_orders_count,
            "local_trades": self.local_trades_count,
            "matched": self.matched,
            "missing_from_local": self.missing_from_local,
            "extra_in_local": self.extra_in_local,
            "status_mismatches": self.status_mismatches,
            "price_mismatches": self.price_mismatches,
            "ambiguous": self.ambiguous,
            "positions_closed": self.positions_closed,
            "stale_cancelled": self.stale_cancelled,
            "writes": self.writes,
        }


# ============================================================
# RECONCILIATION ENGINE
# ============================================================

class ReconciliationEngine:
    """
    Reconciles local trades with exchange order history.

    Runs are serialized; concurrent calls wait for the active run.
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        repository: TradeRepository,
        clock: Optional[ClockProtocol] = None,
        detect_closed_by_balance: bool = False,
        quote_coin: str = "USDT",
        stale_pending_after: Optional[timedelta] = None,
        timeout_seconds: float = 30.0,
    ):
        """
        Initialize engine.

        Args:
            gateway: Exchange gateway
            repository: Trade repository
            clock: Time source
            detect_closed_by_balance: Close filled buys whose base asset balance is zero
            quote_coin: Quote currency used to derive the base asset
            stale_pending_after: Cancel local pending trades without order id older than this
            timeout_seconds: Bound for each gateway call
        """
        self._gateway = gateway
        self._repository = repository
        self._clock = clock or SystemClock()
        self._detect_by_balance = detect_closed_by_balance
        self._quote_coin = quote_coin
        self._stale_after = stale_pending_after
        self._timeout = timeout_seconds
        self._pnl = PnLCalculator()

        self._lock = asyncio.Lock()
        self._run_count = 0
        self._last_report: Optional[ReconciliationReport] = None

    @property
    def last_report(self) -> Optional[ReconciliationReport]:
        return self._last_report

    # --------------------------------------------------------
    # MAIN ENTRY
    # --------------------------------------------------------

    async def reconcile(self, lookback: Optional[timedelta] = None) -> ReconciliationReport:
        """
        Run a full reconciliation.

        Args:
            lookback: History window (default 168 hours)

        Returns:
            ReconciliationReport

        Raises:
            GatewayError: Order history could not be fetched
        """
        async with self._lock:
            self._run_count += 1
            lookback = lookback or DEFAULT_LOOKBACK
            now = self._clock.now()
            report = ReconciliationReport(
                run_id=f"REC_{self._run_count:06d}",
                started_at=now,
                lookback=lookback,
            )
            since = now - lookback

            logger.info(f"Reconciliation started | run_id={report.run_id} | lookback={lookback}")

            exchange_orders = await self._fetch_history(since)
            local_trades = self._repository.query_trades(TradeFilter(created_after=since))

            report.exchange_orders_count = len(exchange_orders)
            report.local_trades_count = len(local_trades)

            self._diff_orders(exchange_orders, local_trades, report)
            self._flag_extras(exchange_orders, local_trades, report)
            self._detect_closed_by_sells(exchange_orders, report)
            if self._detect_by_balance:
                await self._detect_closed_by_balance(report)
            if self._stale_after is not None:
                self._cancel_stale_pending(now, report)

            report.recommendations = self._recommend(report)
            report.completed_at = self._clock.now()
            self._last_report = report

            logger.info(f"Reconciliation completed | run_id={report.run_id} | {report.summary()}")
            return report

    async def _fetch_history(self, since: datetime) -> List[ExchangeOrder]:
        try:
            return await asyncio.wait_for(self._gateway.get_order_history(since), self._timeout)
        except ExchangeException as e:
            raise e.to_gateway_error("get_order_history")
        except asyncio.TimeoutError:
            raise GatewayError(
                f"Order history timed out after {self._timeout}s",
                operation="get_order_history",
                code="TIMEOUT",
            )

    # --------------------------------------------------------
    # ORDER DIFF
    # --------------------------------------------------------

    def _diff_orders(
        self,
        exchange_orders: List[ExchangeOrder],
        local_trades: List[Trade],
        report: ReconciliationReport,
    ) -> None:
        local_by_order = {t.exchange_order_id: t for t in local_trades if t.exchange_order_id}

        for order in exchange_orders:
            if not order.order_id:
                continue
            local = local_by_order.get(order.order_id)
            if local is None:
                # May predate the lookback window
                local = self._repository.find_by_order_id(order.order_id)

            if local is None:
                self._import_order(order, report)
                continue

            report.matched += 1
            self._correct_trade(local, order, report)

    def _import_order(self, order: ExchangeOrder, report: ReconciliationReport) -> None:
        status = order.trade_status
        fill_price = None
        if status.has_fill():
            fill_price = order.fill_price or order.price

        trade = Trade(
            symbol=order.symbol,
            side=order.side,
            order_type=order.order_type,
            quantity=order.quantity,
            submitted_price=order.price if order.price > 0 else (order.fill_price or Decimal("0")),
            status=status,
            fill_price=fill_price,
            exchange_order_id=order.order_id,
            created_at=order.created_at or self._clock.now(),
            notes="imported by reconciliation",
        )
        if trade.submitted_price <= 0:
            self._flag_ambiguous(
                report,
                order.symbol,
                "exchange order has no usable price; not imported",
                order_id=order.order_id,
            )
            return

        self._repository.upsert_trade(trade)
        report.writes += 1
        report.missing_from_local += 1
        report.entries.append(ReconciliationEntry(
            type=DiscrepancyType.MISSING_FROM_LOCAL,
            symbol=order.symbol,
            order_id=order.order_id,
            trade_id=trade.id,
            detail=f"imported as {status.value}",
            corrected=True,
        ))
        logger.info(
            f"Imported missing order | order_id={order.order_id} | symbol={order.symbol} | "
            f"status={status.value}"
        )

    def _correct_trade(
        self,
        local: Trade,
        order: ExchangeOrder,
        report: ReconciliationReport,
    ) -> None:
        exchange_status = order.trade_status
        target_status = local.status
        status_changed = False

        if exchange_status != local.status:
            if TradeStateMachine.is_forward(local.status, exchange_status):
                target_status = exchange_status
                status_changed = True
            elif not TradeStateMachine.is_forward(exchange_status, local.status):
                self._flag_ambiguous(
                    report,
                    local.symbol,
                    f"local {local.status.value} vs exchange {exchange_status.value} "
                    f"needs a back-transition",
                    order_id=order.order_id,
                    trade_id=local.id,
                    local_status=local.status.value,
                    exchange_status=exchange_status.value,
                )
                return

        new_fill = None
        exchange_fill = order.fill_price
        if target_status.has_fill() and exchange_fill is not None:
            if local.fill_price is None or price_differs(local.fill_price, exchange_fill):
                new_fill = exchange_fill
        if status_changed and target_status.has_fill() and new_fill is None and local.fill_price is None:
            new_fill = order.price

        if not status_changed and new_fill is None:
            return

        updated = apply_transition(
            local,
            target_status,
            fill_price=new_fill,
            reason=f"reconciliation {report.run_id}",
        )
        self._repository.upsert_trade(updated)
        report.writes += 1

        if status_changed:
            report.status_mismatches += 1
            report.entries.append(ReconciliationEntry(
                type=DiscrepancyType.STATUS_MISMATCH,
                symbol=local.symbol,
                order_id=order.order_id,
                trade_id=local.id,
                detail=f"{local.status.value} -> {target_status.value}",
                corrected=True,
            ))
        if new_fill is not None and local.fill_price is not None:
            report.price_mismatches += 1
            report.entries.append(ReconciliationEntry(
                type=DiscrepancyType.PRICE_MISMATCH,
                symbol=local.symbol,
                order_id=order.order_id,
                trade_id=local.id,
                detail=f"fill price {local.fill_price} -> {new_fill}",
                corrected=True,
            ))

    @staticmethod
    def _flag_ambiguous(
        report: ReconciliationReport,
        symbol: str,
        detail: str,
        order_id: Optional[str] = None,
        trade_id: Optional[str] = None,
        **context,
    ) -> None:
        error = ReconciliationMismatchError(
            f"{symbol}: {detail}",
            context={"order_id": order_id, "trade_id": trade_id, **context},
        )
        logger.warning(error.to_log_format())
        report.ambiguous += 1
        report.entries.append(ReconciliationEntry(
            type=DiscrepancyType.AMBIGUOUS,
            symbol=symbol,
            order_id=order_id,
            trade_id=trade_id,
            detail=detail,
            error=error,
        ))

    # --------------------------------------------------------
    # EXTRAS
    # --------------------------------------------------------

    def _flag_extras(
        self,
        exchange_orders: List[ExchangeOrder],
        local_trades: List[Trade],
        report: ReconciliationReport,
    ) -> None:
        exchange_ids = {o.order_id for o in exchange_orders}
        for trade in local_trades:
            if trade.exchange_order_id in exchange_ids:
                continue
            report.extra_in_local += 1
            report.entries.append(ReconciliationEntry(
                type=DiscrepancyType.EXTRA_IN_LOCAL,
                symbol=trade.symbol,
                order_id=trade.exchange_order_id,
                trade_id=trade.id,
                detail=f"no exchange order in window (status {trade.status.value})",
            ))

    def _cancel_stale_pending(self, now: datetime, report: ReconciliationReport) -> None:
        cutoff = now - self._stale_after
        stale = self._repository.query_trades(TradeFilter(
            statuses=frozenset({TradeStatus.PENDING}),
            created_before=cutoff,
        ))
        for trade in stale:
            if trade.exchange_order_id:
                continue
            updated = apply_transition(
                trade,
                TradeStatus.CANCELLED,
                reason="stale pending without exchange order id",
            )
            self._repository.upsert_trade(updated.copy_with(notes="cancelled: stale pending"))
            report.writes += 1
            report.stale_cancelled += 1
            report.entries.append(ReconciliationEntry(
                type=DiscrepancyType.STALE_PENDING,
                symbol=trade.symbol,
                trade_id=trade.id,
                detail=f"pending since {trade.created_at.isoformat()}",
                corrected=True,
            ))

    # --------------------------------------------------------
    # CLOSED POSITION DETECTION
    # --------------------------------------------------------

    def _detect_closed_by_sells(
        self,
        exchange_orders: List[ExchangeOrder],
        report: ReconciliationReport,
    ) -> None:
        """Close filled buys by their own limit sell, else by a later filled sell of similar size."""
        open_buys = self._repository.query_trades(TradeFilter(
            side=TradeSide.BUY,
            statuses=frozenset({TradeStatus.FILLED}),
        ))
        consumed: Set[str] = {
            t.closing_order_id
            for t in self._repository.query_trades(TradeFilter(statuses=frozenset({TradeStatus.CLOSED})))
            if t.closing_order_id
        }
        consumed.update(b.closing_order_id for b in open_buys if b.closing_order_id)

        orders_by_id = {o.order_id: o for o in exchange_orders if o.order_id}
        unlinked = []
        for buy in open_buys:
            if buy.closing_order_id:
                self._resolve_pending_close(buy, orders_by_id.get(buy.closing_order_id), report)
            else:
                unlinked.append(buy)

        sells = sorted(
            (
                o for o in exchange_orders
                if o.side == TradeSide.SELL
                and o.trade_status == TradeStatus.FILLED
                and o.order_id not in consumed
            ),
            key=lambda o: o.created_at or report.started_at,
        )
        for buy in unlinked:
            if not sells:
                return
            match = self._match_sell(buy, sells)
            if match is None:
                continue
            sells.remove(match)
            self._close_by_sell(buy, match, report, reason=f"matched sell {match.order_id}")

    def _resolve_pending_close(
        self,
        buy: Trade,
        sell: Optional[ExchangeOrder],
        report: ReconciliationReport,
    ) -> None:
        # Still open, partially filled, or outside the window: keep waiting
        if sell is None:
            return
        status = sell.trade_status

        if status == TradeStatus.FILLED:
            self._close_by_sell(buy, sell, report, reason=f"limit sell {sell.order_id} filled")
        elif status == TradeStatus.CANCELLED:
            released = buy.copy_with(
                closing_order_id=None,
                notes=f"close released: sell {buy.closing_order_id} cancelled",
            )
            self._repository.upsert_trade(released)
            report.writes += 1
            report.entries.append(ReconciliationEntry(
                type=DiscrepancyType.STATUS_MISMATCH,
                symbol=buy.symbol,
                order_id=buy.closing_order_id,
                trade_id=buy.id,
                detail="closing sell cancelled; position open again",
                corrected=True,
            ))
            logger.info(
                f"Pending close released | trade_id={buy.id} | symbol={buy.symbol} | "
                f"sell_order_id={buy.closing_order_id}"
            )

    def _close_by_sell(
        self,
        buy: Trade,
        sell: ExchangeOrder,
        report: ReconciliationReport,
        reason: str,
    ) -> None:
        exit_price = sell.fill_price or sell.price
        profit = self._pnl.realized_pl(buy.effective_entry_price, exit_price, buy.quantity)
        closed = apply_transition(
            buy,
            TradeStatus.CLOSED,
            profit_loss=profit,
            closing_order_id=sell.order_id,
            reason=reason,
        )
        if buy.closing_order_id:
            closed = closed.copy_with(notes=f"closed: limit sell {sell.order_id} filled")
        self._repository.upsert_trade(closed)
        report.writes += 1
        report.positions_closed += 1
        report.entries.append(ReconciliationEntry(
            type=DiscrepancyType.POSITION_CLOSED,
            symbol=buy.symbol,
            order_id=sell.order_id,
            trade_id=buy.id,
            detail=f"closed by sell at {exit_price}, P&L {profit}",
            corrected=True,
        ))

    @staticmethod
    def _match_sell(buy: Trade, sells: List[ExchangeOrder]) -> Optional[ExchangeOrder]:
        for sell in sells:
            if sell.symbol != buy.symbol:
                continue
            if sell.created_at is not None and sell.created_at < buy.created_at:
                continue
            sold = sell.executed_qty if sell.executed_qty > 0 else sell.quantity
            if abs(sold - buy.quantity) / buy.quantity <= CLOSE_QTY_TOLERANCE:
                return sell
        return None

    async def _detect_closed_by_balance(self, report: ReconciliationReport) -> None:
        """
        Close filled buys whose base asset balance is zero.

        The coins left by an unseen path, so the exit price is unknown
        and no P&L is recorded.
        """
        try:
            wallet = await asyncio.wait_for(self._gateway.get_wallet_balance(), self._timeout)
        except (ExchangeException, asyncio.TimeoutError) as e:
            logger.warning(f"Balance check skipped | run_id={report.run_id} | error={e}")
            return

        open_buys = self._repository.query_trades(TradeFilter(
            side=TradeSide.BUY,
            statuses=frozenset({TradeStatus.FILLED}),
        ))
        for buy in open_buys:
            if buy.closing_order_id or not buy.symbol.endswith(self._quote_coin):
                continue
            base = buy.symbol[:-len(self._quote_coin)]
            if wallet.balance_of(base) > 0:
                continue

            closed = apply_transition(
                buy,
                TradeStatus.CLOSED,
                reason=f"zero {base} balance",
                pnl_unknown=True,
            )
            self._repository.upsert_trade(
                closed.copy_with(notes=f"closed: zero {base} balance; exit price unknown")
            )
            report.writes += 1
            report.positions_closed += 1
            report.entries.append(ReconciliationEntry(
                type=DiscrepancyType.POSITION_CLOSED,
                symbol=buy.symbol,
                trade_id=buy.id,
                detail=f"no remaining {base} balance; exit price unknown, P&L not recorded",
                corrected=True,
            ))

    # --------------------------------------------------------
    # RECOMMENDATIONS
    # --------------------------------------------------------

    @staticmethod
    def _recommend(report: ReconciliationReport) -> List[str]:
        recommendations = []
        if report.missing_from_local:
            recommendations.append(
                f"Imported {report.missing_from_local} exchange orders missing locally; review their sizing"
            )
        if report.extra_in_local:
            recommendations.append(
                f"Review {report.extra_in_local} local trades with no exchange order in the window"
            )
        if report.status_mismatches:
            recommendations.append(
                f"Fixed {report.status_mismatches} status mismatches; check the order polling path"
            )
        if report.ambiguous:
            recommendations.append(
                f"Resolve {report.ambiguous} ambiguous discrepancies manually"
            )
        if not recommendations:
            recommendations.append("Local trades are in sync with the exchange")
        return recommendations
