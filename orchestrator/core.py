"""
Orchestrator - Core.

============================================================
RESPONSIBILITY
============================================================
The trading loop.

- One decision cycle per interval
- Symbols evaluated concurrently within a cycle
- At most one evaluation (and one order submission) per
  symbol at a time
- Cooperative stop: the current cycle finishes, no new
  cycle starts
- End-of-day closing on UTC date rollover

============================================================
PER-SYMBOL PIPELINE
============================================================
price -> candles -> signal -> governance -> sizing -> execution

A failure at any stage ends that symbol's evaluation for the
cycle and never aborts the other symbols.

============================================================
"""

import asyncio
import json
import logging
import sys
from datetime import timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from core.clock import ClockProtocol, SystemClock
from core.exceptions import GatewayError
from execution_engine.adapters.base import ExchangeGateway
from execution_engine.adapters.errors import ExchangeException
from execution_engine.config import TradingConfig
from execution_engine.executor import OrderExecutor
from execution_engine.instruments import InstrumentCatalog
from execution_engine.pnl import PnLCalculator
from execution_engine.position_closer import EndOfDayReport, PositionCloser
from execution_engine.precision import PrecisionFormatter
from execution_engine.reconciliation import ReconciliationEngine, ReconciliationReport
from execution_engine.repository import TradeRepository
from execution_engine.types import TradeSide
from risk_management.placement_governor import PlacementGovernor
from strategy_engine.signal_generator import SignalGenerator
from .models import CycleResult, OutcomeStatus, SymbolOutcome, SymbolStage


logger = logging.getLogger(__name__)


# ============================================================
# LOGGING SETUP
# ============================================================

def setup_logging(
    level: str = "INFO",
    log_format: str = "text",
) -> logging.Logger:
    """
    Configure the root logger once.

    Args:
        level: Log level name
        log_format: "json" or "text"

    Returns:
        Orchestrator logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_format == "json":
        formatter = logging.Formatter(
            json.dumps({
                "timestamp": "%(asctime)s",
                "level": "%(levelname)s",
                "logger": "%(name)s",
                "message": "%(message)s",
            })
        )
    else:
        formatter = logging.Formatter("%(asctime)s | %(levelname)-8s | %(name)s | %(message)s")

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    return logging.getLogger("orchestrator")


# ============================================================
# TRADING LOOP
# ============================================================

class TradingLoop:
    """
    Decision loop over the configured symbols.

    Components are built from the gateway and repository unless
    supplied explicitly.
    """

    def __init__(
        self,
        config: TradingConfig,
        gateway: ExchangeGateway,
        repository: TradeRepository,
        clock: Optional[ClockProtocol] = None,
        catalog: Optional[InstrumentCatalog] = None,
        signal_generator: Optional[SignalGenerator] = None,
        governor: Optional[PlacementGovernor] = None,
        executor: Optional[OrderExecutor] = None,
        reconciler: Optional[ReconciliationEngine] = None,
        closer: Optional[PositionCloser] = None,
    ):
        self._config = config
        self._gateway = gateway
        self._repository = repository
        self._clock = clock or SystemClock()
        self._timeout = config.exchange.timeout_seconds

        self.catalog = catalog or InstrumentCatalog(gateway, config, self._clock)
        self.formatter = PrecisionFormatter(self.catalog)
        self.signal_generator = signal_generator or SignalGenerator(self.formatter, config)
        self.governor = governor or PlacementGovernor(repository, config)
        self.executor = executor or OrderExecutor(
            gateway, self.formatter, repository, timeout_seconds=self._timeout,
        )
        self.reconciler = reconciler or ReconciliationEngine(
            gateway,
            repository,
            clock=self._clock,
            detect_closed_by_balance=config.detect_closed_by_balance,
            stale_pending_after=(
                timedelta(minutes=config.stale_pending_minutes)
                if config.stale_pending_minutes else None
            ),
            timeout_seconds=self._timeout,
        )
        self.closer = closer or PositionCloser(
            gateway, self.executor, repository, config, PnLCalculator(),
        )

        self._locks: Dict[str, asyncio.Lock] = {}
        self._stop_event = asyncio.Event()
        self._cycle_count = 0
        self._last_date = None

    # --------------------------------------------------------
    # Properties
    # --------------------------------------------------------

    @property
    def config(self) -> TradingConfig:
        return self._config

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    # --------------------------------------------------------
    # Main Loop
    # --------------------------------------------------------

    def request_stop(self) -> None:
        """Stop after the current cycle. Submitted orders are never interrupted."""
        logger.info("Stop requested")
        self._stop_event.set()

    async def run_forever(
        self,
        max_cycles: Optional[int] = None,
        reconcile_every: Optional[int] = None,
    ) -> None:
        """
        Run cycles until stopped.

        Args:
            max_cycles: Stop after this many cycles
            reconcile_every: Reconcile after every N cycles
        """
        self._last_date = self._clock.today()
        logger.info(
            f"Starting main loop | interval={self._config.main_loop_interval_seconds}s | "
            f"symbols={self._config.trading_pairs}"
        )

        cycles = 0
        while not self._stop_event.is_set():
            await self.run_cycle()
            cycles += 1

            if reconcile_every and cycles % reconcile_every == 0:
                try:
                    await self.reconcile()
                except GatewayError as e:
                    logger.warning(f"Reconciliation skipped | error={e.message}")

            await self._check_end_of_day()

            if max_cycles is not None and cycles >= max_cycles:
                break
            await self._wait_for_next_tick()

        logger.info(f"Main loop stopped | cycles={cycles}")

    async def _wait_for_next_tick(self) -> None:
        try:
            await asyncio.wait_for(
                self._stop_event.wait(),
                timeout=self._config.main_loop_interval_seconds,
            )
        except asyncio.TimeoutError:
            pass

    async def _check_end_of_day(self) -> Optional[EndOfDayReport]:
        today = self._clock.today()
        if self._last_date is None or today == self._last_date:
            return None
        self._last_date = today
        logger.info(f"UTC date rollover | date={today.isoformat()}")
        return await self.closer.close_all_at_end_of_day()

    # --------------------------------------------------------
    # Cycle
    # --------------------------------------------------------

    async def run_cycle(self, symbols: Optional[List[str]] = None) -> CycleResult:
        """
        Evaluate every symbol once.

        Args:
            symbols: Symbols to evaluate (default trading_pairs)

        Returns:
            CycleResult with one outcome per symbol
        """
        self._cycle_count += 1
        result = CycleResult(
            cycle_id=f"CYC_{self._cycle_count:06d}",
            started_at=self._clock.now(),
        )
        symbols = symbols if symbols is not None else self._config.trading_pairs

        portfolio_value = await self._portfolio_value()
        result.outcomes = list(await asyncio.gather(
            *(self._run_symbol(symbol, portfolio_value) for symbol in symbols)
        ))
        result.completed_at = self._clock.now()

        logger.info(
            f"Cycle completed | cycle_id={result.cycle_id} | symbols={len(symbols)} | "
            f"orders={result.orders_placed} | errors={len(result.errors)}"
        )
        return result

    async def _portfolio_value(self) -> Optional[Decimal]:
        try:
            wallet = await asyncio.wait_for(self._gateway.get_wallet_balance(), self._timeout)
        except (ExchangeException, asyncio.TimeoutError) as e:
            logger.warning(f"Wallet balance unavailable, exposure check skipped | error={e}")
            return None
        return wallet.total_equity_usd

    async def _run_symbol(self, symbol: str, portfolio_value: Optional[Decimal]) -> SymbolOutcome:
        lock = self._locks.setdefault(symbol, asyncio.Lock())
        if lock.locked():
            return SymbolOutcome(
                symbol, OutcomeStatus.SKIPPED, SymbolStage.PRICE,
                reason="previous evaluation still running",
            )

        async with lock:
            try:
                return await self._evaluate_symbol(symbol, portfolio_value)
            except Exception as e:
                logger.error(f"Symbol evaluation failed | symbol={symbol} | error={e}", exc_info=True)
                return SymbolOutcome(symbol, OutcomeStatus.ERROR, SymbolStage.PRICE, reason=str(e))

    async def _evaluate_symbol(self, symbol: str, portfolio_value: Optional[Decimal]) -> SymbolOutcome:
        cfg = self._config

        # Price
        try:
            ticker = await asyncio.wait_for(self._gateway.get_ticker_price(symbol), self._timeout)
        except ExchangeException as e:
            return self._failed(symbol, SymbolStage.PRICE, f"price unavailable: {e.error.message}")
        except asyncio.TimeoutError:
            return self._failed(symbol, SymbolStage.PRICE, "price unavailable: timeout")

        # Candles (only needed for a new position)
        open_trades = [
            t for t in self._repository.open_trades(symbol) if t.side == TradeSide.BUY
        ]
        candles = []
        if not open_trades:
            try:
                candles = await asyncio.wait_for(
                    self._gateway.get_candles(symbol, cfg.chart_timeframe, cfg.support_candle_count),
                    self._timeout,
                )
            except ExchangeException as e:
                return self._failed(symbol, SymbolStage.CANDLES, f"candles unavailable: {e.error.message}")
            except asyncio.TimeoutError:
                return self._failed(symbol, SymbolStage.CANDLES, "candles unavailable: timeout")

        # Signal
        signal_result = await self.signal_generator.generate_entry_signal(
            symbol, ticker.last_price, candles, open_trades=open_trades,
        )
        if not signal_result:
            return SymbolOutcome(symbol, OutcomeStatus.NO_SIGNAL, SymbolStage.SIGNAL, reason=signal_result.reason)
        signal = self._repository.insert_signal(signal_result.signal)

        # Governance
        decision = self.governor.can_place(symbol, signal.price, portfolio_value=portfolio_value)
        if not decision:
            self._repository.mark_signal_processed(signal.id)
            return SymbolOutcome(
                symbol, OutcomeStatus.REJECTED, SymbolStage.GOVERNANCE,
                reason=decision.reason, signal=signal,
            )

        if not self.governor.reserve(symbol):
            return SymbolOutcome(
                symbol, OutcomeStatus.SKIPPED, SymbolStage.GOVERNANCE,
                reason="order submission in flight", signal=signal,
            )
        try:
            # Sizing
            try:
                quantity = await self.formatter.calculate_quantity(symbol, cfg.max_order_amount_usd, signal.price)
            except ValueError as e:
                return self._failed(symbol, SymbolStage.SIZING, f"sizing failed: {e}", signal)

            # Execution
            execution = await self.executor.execute_buy(symbol, quantity, signal.price)
        finally:
            self.governor.release(symbol)
            self._repository.mark_signal_processed(signal.id)

        if not execution.success:
            return self._failed(symbol, SymbolStage.EXECUTION, execution.error, signal)
        reason = f"buy {execution.formatted_quantity} @ {execution.formatted_price}"
        if execution.error:
            reason = f"{reason} ({execution.error})"
        return SymbolOutcome(
            symbol, OutcomeStatus.ORDER_PLACED, SymbolStage.EXECUTION,
            reason=reason,
            signal=signal,
            order_id=execution.order_id,
        )

    @staticmethod
    def _failed(symbol: str, stage: SymbolStage, reason: str, signal=None) -> SymbolOutcome:
        logger.warning(f"Symbol step failed | symbol={symbol} | stage={stage.value} | reason={reason}")
        return SymbolOutcome(symbol, OutcomeStatus.FAILED, stage, reason=reason, signal=signal)

    # --------------------------------------------------------
    # On-demand operations
    # --------------------------------------------------------

    async def reconcile(self, lookback: Optional[timedelta] = None) -> ReconciliationReport:
        lookback = lookback or timedelta(hours=self._config.reconciliation_lookback_hours)
        return await self.reconciler.reconcile(lookback)

    def clear_cache(self) -> None:
        """Drop all cached instrument rules."""
        self.catalog.invalidate_all()
        logger.info("Instrument cache cleared")
