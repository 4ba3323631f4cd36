"""
Strategy Engine - Entry Signal Generator.

============================================================
PURPOSE
============================================================
Proposes buy entries from support levels, or averages down
existing positions.

============================================================
SIGNAL LOGIC
============================================================
NEW POSITION (no open trades for the symbol):
- Strongest support below the current price, else the
  lowest low x 1.005
- Entry = support x (1 + entry_offset_percent / 100)
- Distance = (current - entry) / current x 100 must lie in
  [-support_lower_bound_percent, +support_upper_bound_percent]
- Support strength must reach min_support_strength
- Confidence = support strength

AVERAGING DOWN (open filled trades exist):
- Change = (current - last purchase) / last purchase x 100,
  same bound window
- Entry = current x (1 - entry_offset_percent / 100)
- Confidence = averaging_down_confidence

Every entry is formatted to the instrument tick; a formatted
price deviating from its raw value by more than
max_price_deviation_percent is rejected.

============================================================
"""

import logging
from decimal import Decimal
from typing import List, Optional, Sequence

from core.exceptions import MetadataUnavailableError
from execution_engine.config import TradingConfig
from execution_engine.precision import PrecisionFormatter, to_decimal
from execution_engine.types import (
    Candle,
    PositionView,
    Signal,
    SignalKind,
    Trade,
    TradeSide,
)
from .support import MIN_CANDLES, SupportLevelAnalyzer
from .types import SignalResult, SupportLevel


logger = logging.getLogger(__name__)


HUNDRED = Decimal("100")


class SignalGenerator:
    """
    Generates buy entry signals.

    Never raises for market conditions; every "no signal" carries
    a reason.
    """

    def __init__(
        self,
        formatter: PrecisionFormatter,
        config: Optional[TradingConfig] = None,
        analyzer: Optional[SupportLevelAnalyzer] = None,
    ):
        self._formatter = formatter
        self._config = config or TradingConfig()
        self._analyzer = analyzer or SupportLevelAnalyzer()

    # --------------------------------------------------------
    # PUBLIC API
    # --------------------------------------------------------

    async def generate_entry_signal(
        self,
        symbol: str,
        current_price,
        candles: Sequence[Candle],
        config: Optional[TradingConfig] = None,
        open_trades: Optional[List[Trade]] = None,
    ) -> SignalResult:
        """
        Evaluate one symbol.

        Args:
            symbol: Trading symbol
            current_price: Latest price
            candles: Recent candles, oldest first
            config: Overrides the generator's configuration
            open_trades: The symbol's open trades; filled buys switch
                evaluation to averaging down

        Returns:
            SignalResult holding a Signal or the rejection reason
        """
        cfg = config or self._config

        try:
            current = to_decimal(current_price)
        except ValueError as e:
            return self._reject(symbol, f"invalid current price: {e}")
        if current <= 0:
            return self._reject(symbol, f"invalid current price: {current}")

        view = PositionView(
            symbol=symbol,
            open_trades=[t for t in (open_trades or []) if t.symbol == symbol and t.side == TradeSide.BUY],
        )

        try:
            if view.position_count:
                return await self._averaging_down(symbol, current, view, cfg)
            return await self._support_entry(symbol, current, candles, cfg)
        except MetadataUnavailableError as e:
            return self._reject(symbol, e.message)

    # --------------------------------------------------------
    # NEW POSITION
    # --------------------------------------------------------

    async def _support_entry(
        self,
        symbol: str,
        current: Decimal,
        candles: Sequence[Candle],
        cfg: TradingConfig,
    ) -> SignalResult:
        kind = SignalKind.SUPPORT_ENTRY
        window = list(candles)[-cfg.support_candle_count:]
        if len(window) < MIN_CANDLES:
            return self._reject(symbol, f"insufficient candles ({len(window)} < {MIN_CANDLES})", kind)

        support = self._select_support(window, current)
        if support.strength < cfg.min_support_strength:
            return self._reject(
                symbol,
                f"support strength {support.strength:.2f} below minimum {cfg.min_support_strength}",
                kind,
            )

        raw_entry = support.price * (1 + cfg.entry_offset_percent / HUNDRED)
        entry = await self._format_entry(symbol, raw_entry, cfg)
        if isinstance(entry, str):
            return self._reject(symbol, entry, kind)

        distance = (current - entry) / current * HUNDRED
        if not self._within_bounds(distance, cfg):
            return self._reject(
                symbol,
                f"distance {distance:.2f}% outside bounds "
                f"[-{cfg.support_lower_bound_percent}%, +{cfg.support_upper_bound_percent}%]",
                kind,
            )

        support_price = await self._formatter.format_price(symbol, support.price)
        source = "lowest-low fallback" if support.is_fallback else f"{support.touches} touches"
        signal = Signal(
            symbol=symbol,
            price=entry,
            confidence=round(support.strength, 4),
            kind=kind,
            support_level=Decimal(support_price),
            reasoning=(
                f"NEW POSITION: entry {entry} ({cfg.entry_offset_percent}% above support "
                f"{support_price}, {source}, strength {support.strength:.2f}); "
                f"current {current}, distance {distance:.2f}%, "
                f"take profit {cfg.take_profit_percent}%"
            ),
        )
        return self._accept(signal)

    def _select_support(self, window: List[Candle], current: Decimal) -> SupportLevel:
        below = [level for level in self._analyzer.find_support_levels(window) if level.price < current]
        if below:
            return below[0]
        return self._analyzer.fallback_level(window)

    # --------------------------------------------------------
    # AVERAGING DOWN
    # --------------------------------------------------------

    async def _averaging_down(
        self,
        symbol: str,
        current: Decimal,
        view: PositionView,
        cfg: TradingConfig,
    ) -> SignalResult:
        kind = SignalKind.AVERAGING_DOWN
        if not cfg.averaging_down_enabled:
            return self._reject(symbol, "open position exists and averaging down is disabled", kind)

        last = view.last_purchase
        if last is None:
            return self._reject(symbol, "open orders awaiting fill", kind)

        last_price = last.effective_entry_price
        change = (current - last_price) / last_price * HUNDRED
        if not self._within_bounds(change, cfg):
            return self._reject(
                symbol,
                f"price change {change:.2f}% since last purchase {last_price} outside bounds "
                f"[-{cfg.support_lower_bound_percent}%, +{cfg.support_upper_bound_percent}%]",
                kind,
            )

        raw_entry = current * (1 - cfg.entry_offset_percent / HUNDRED)
        entry = await self._format_entry(symbol, raw_entry, cfg)
        if isinstance(entry, str):
            return self._reject(symbol, entry, kind)

        signal = Signal(
            symbol=symbol,
            price=entry,
            confidence=cfg.averaging_down_confidence,
            kind=kind,
            reasoning=(
                f"AVERAGING DOWN: entry {entry} ({cfg.entry_offset_percent}% below current "
                f"{current}); last purchase {last_price}, change {change:.2f}%, "
                f"open positions {view.position_count}"
            ),
        )
        return self._accept(signal)

    # --------------------------------------------------------
    # HELPERS
    # --------------------------------------------------------

    async def _format_entry(self, symbol: str, raw_entry: Decimal, cfg: TradingConfig):
        """Formatted entry as Decimal, or a rejection reason string."""
        if raw_entry <= 0:
            return f"non-positive entry price {raw_entry}"
        entry = Decimal(await self._formatter.format_price(symbol, raw_entry))
        deviation = abs(entry - raw_entry) / raw_entry * HUNDRED
        if deviation > cfg.max_price_deviation_percent:
            return (
                f"formatted entry {entry} deviates {deviation:.4f}% from raw {raw_entry:.8f} "
                f"(max {cfg.max_price_deviation_percent}%)"
            )
        return entry

    @staticmethod
    def _within_bounds(percent: Decimal, cfg: TradingConfig) -> bool:
        return -cfg.support_lower_bound_percent <= percent <= cfg.support_upper_bound_percent

    @staticmethod
    def _reject(symbol: str, reason: str, kind: Optional[SignalKind] = None) -> SignalResult:
        logger.info(f"No signal | symbol={symbol} | reason={reason}")
        return SignalResult.rejected(symbol, reason, kind)

    @staticmethod
    def _accept(signal: Signal) -> SignalResult:
        logger.info(
            f"Signal generated | symbol={signal.symbol} | kind={signal.kind.value} | "
            f"price={signal.price} | confidence={signal.confidence}"
        )
        return SignalResult(symbol=signal.symbol, signal=signal, kind=signal.kind)
