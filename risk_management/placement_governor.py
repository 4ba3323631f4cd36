"""
Risk Management - Placement Governor.

============================================================
RESPONSIBILITY
============================================================
Decides whether a buy signal may be turned into an order.

- Enforces position limits per symbol and across symbols
- Enforces the portfolio exposure cap
- Suppresses duplicate orders near an existing entry
- Blocks symbols with an order submission in flight

============================================================
DESIGN PRINCIPLES
============================================================
- Every rejection names the limit, its current value and
  the limit value
- Never silently drops a signal
- Reads open trades from the repository on every decision

============================================================
GOVERNOR CHECKS (in order)
============================================================
1. Entry price positive
2. No submission in flight for the symbol
3. Distinct symbols with open positions < max_active_pairs
4. Open positions for the symbol < max_positions_per_symbol
5. No open buy within new_support_threshold_percent of the entry
6. Exposure after the order within max_portfolio_exposure_percent
   (skipped when the portfolio value is unknown)

============================================================
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, Optional, Set

from core.exceptions import GovernanceRejectedError
from execution_engine.config import TradingConfig
from execution_engine.precision import to_decimal
from execution_engine.repository import TradeRepository
from execution_engine.types import PositionView, Trade, TradeSide, TradeStatus


logger = logging.getLogger(__name__)


HUNDRED = Decimal("100")


# ============================================================
# DECISION TYPES
# ============================================================

class GovernanceLimit(Enum):
    """Limit that rejected a placement."""

    INVALID_PRICE = "invalid_price"
    ORDER_IN_FLIGHT = "order_in_flight"
    MAX_ACTIVE_PAIRS = "max_active_pairs"
    MAX_POSITIONS_PER_SYMBOL = "max_positions_per_symbol"
    DUPLICATE_ORDER = "duplicate_order"
    MAX_PORTFOLIO_EXPOSURE = "max_portfolio_exposure_percent"


@dataclass
class GovernanceDecision:
    """Outcome of a placement check."""

    symbol: str
    allowed: bool
    reason: str

    limit_name: Optional[GovernanceLimit] = None
    """Rejecting limit (None when allowed)."""

    current: Optional[Decimal] = None
    """Observed value for the rejecting limit."""

    limit: Optional[Decimal] = None
    """Configured value for the rejecting limit."""

    def __bool__(self) -> bool:
        return self.allowed

    def raise_if_rejected(self) -> None:
        if not self.allowed:
            raise GovernanceRejectedError(
                self.reason,
                context={
                    "symbol": self.symbol,
                    "limit": self.limit_name.value if self.limit_name else None,
                    "current": str(self.current),
                    "limit_value": str(self.limit),
                },
            )


# ============================================================
# POSITION VIEWS
# ============================================================

def build_position_views(trades: Iterable[Trade]) -> Dict[str, PositionView]:
    """Group open buy trades by symbol. Sell legs never count as positions."""
    views: Dict[str, PositionView] = {}
    for trade in trades:
        if trade.side != TradeSide.BUY or not trade.status.is_open():
            continue
        views.setdefault(trade.symbol, PositionView(symbol=trade.symbol)).open_trades.append(trade)
    return views


DUPLICATE_STATUSES = frozenset({
    TradeStatus.PENDING,
    TradeStatus.PARTIAL_FILLED,
    TradeStatus.FILLED,
})


# ============================================================
# PLACEMENT GOVERNOR
# ============================================================

class PlacementGovernor:
    """
    Gatekeeper between signal generation and order execution.

    Callers reserve the symbol before submitting and release it
    once the submission has been recorded.
    """

    def __init__(self, repository: TradeRepository, config: Optional[TradingConfig] = None):
        self._repository = repository
        self._config = config or TradingConfig()
        self._in_flight: Set[str] = set()

    # --------------------------------------------------------
    # IN-FLIGHT RESERVATION
    # --------------------------------------------------------

    def reserve(self, symbol: str) -> bool:
        """Mark a submission in flight. False when already reserved."""
        if symbol in self._in_flight:
            return False
        self._in_flight.add(symbol)
        return True

    def release(self, symbol: str) -> None:
        self._in_flight.discard(symbol)

    def is_reserved(self, symbol: str) -> bool:
        return symbol in self._in_flight

    # --------------------------------------------------------
    # DECISION
    # --------------------------------------------------------

    def can_place(
        self,
        symbol: str,
        proposed_entry_price,
        config: Optional[TradingConfig] = None,
        portfolio_value: Optional[Decimal] = None,
    ) -> GovernanceDecision:
        """
        Check whether a buy at the proposed entry may be placed.

        Args:
            symbol: Trading symbol
            proposed_entry_price: Formatted entry price
            config: Overrides the governor's configuration
            portfolio_value: Total portfolio value in quote currency

        Returns:
            GovernanceDecision
        """
        cfg = config or self._config

        try:
            entry = to_decimal(proposed_entry_price)
        except ValueError:
            entry = Decimal("0")
        if entry <= 0:
            return self._reject(
                symbol, GovernanceLimit.INVALID_PRICE,
                f"Invalid entry price {proposed_entry_price}",
            )

        if symbol in self._in_flight:
            return self._reject(
                symbol, GovernanceLimit.ORDER_IN_FLIGHT,
                f"Order submission already in flight for {symbol}",
            )

        views = build_position_views(self._repository.open_trades())
        view = views.get(symbol, PositionView(symbol=symbol))

        # Position limits
        active = {s for s, v in views.items() if v.position_count > 0}
        if symbol not in active and len(active) >= cfg.max_active_pairs:
            return self._reject(
                symbol, GovernanceLimit.MAX_ACTIVE_PAIRS,
                f"Max active pairs reached: {len(active)}/{cfg.max_active_pairs}",
                current=Decimal(len(active)), limit=Decimal(cfg.max_active_pairs),
            )

        if view.position_count >= cfg.max_positions_per_symbol:
            return self._reject(
                symbol, GovernanceLimit.MAX_POSITIONS_PER_SYMBOL,
                f"Max positions for {symbol} reached: "
                f"{view.position_count}/{cfg.max_positions_per_symbol}",
                current=Decimal(view.position_count), limit=Decimal(cfg.max_positions_per_symbol),
            )

        # Duplicate suppression
        duplicate = self._find_duplicate(view, entry, cfg.new_support_threshold_percent)
        if duplicate is not None:
            existing = duplicate.effective_entry_price
            gap = abs(existing - entry) / entry * HUNDRED
            return self._reject(
                symbol, GovernanceLimit.DUPLICATE_ORDER,
                f"Open {duplicate.status.value} buy at {existing} is within "
                f"{gap:.2f}% of proposed entry {entry} "
                f"(threshold {cfg.new_support_threshold_percent}%)",
                current=gap, limit=cfg.new_support_threshold_percent,
            )

        # Exposure
        if portfolio_value is not None and portfolio_value > 0:
            total_exposure = sum((v.exposure for v in views.values()), Decimal("0"))
            after = (total_exposure + cfg.max_order_amount_usd) / portfolio_value * HUNDRED
            if after > cfg.max_portfolio_exposure_percent:
                return self._reject(
                    symbol, GovernanceLimit.MAX_PORTFOLIO_EXPOSURE,
                    f"Portfolio exposure would be {after:.2f}% "
                    f"(limit {cfg.max_portfolio_exposure_percent}%)",
                    current=after, limit=cfg.max_portfolio_exposure_percent,
                )

        return GovernanceDecision(symbol=symbol, allowed=True, reason="Placement allowed")

    @staticmethod
    def _find_duplicate(view: PositionView, entry: Decimal, threshold_percent: Decimal) -> Optional[Trade]:
        for trade in view.open_trades:
            if trade.side != TradeSide.BUY or trade.status not in DUPLICATE_STATUSES:
                continue
            gap = abs(trade.effective_entry_price - entry) / entry * HUNDRED
            if gap <= threshold_percent:
                return trade
        return None

    @staticmethod
    def _reject(
        symbol: str,
        limit_name: GovernanceLimit,
        reason: str,
        current: Optional[Decimal] = None,
        limit: Optional[Decimal] = None,
    ) -> GovernanceDecision:
        logger.info(f"Placement rejected | symbol={symbol} | limit={limit_name.value} | reason={reason}")
        return GovernanceDecision(
            symbol=symbol,
            allowed=False,
            reason=reason,
            limit_name=limit_name,
            current=current,
            limit=limit,
        )
