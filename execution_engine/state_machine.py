"""
Execution Engine - Trade State Machine.

============================================================
PURPOSE
============================================================
Guards trade status transitions.

STATE MACHINE:

    PENDING ──► FILLED ──► CLOSED
       │          ▲          ▲
       ├──► PARTIAL_FILLED ──┘
       │
       └──► CANCELLED

INVARIANTS:
- Transitions are monotonic (no back-transitions)
- CLOSED and CANCELLED are terminal
- Same-state transitions are idempotent no-ops
- fill_price is present for FILLED/PARTIAL_FILLED/CLOSED
- profit_loss is present for CLOSED unless the exit price is unknown

============================================================
"""

import logging
from decimal import Decimal
from typing import Dict, Optional, Set, Tuple

from core.exceptions import InvalidTransitionError
from .types import Trade, TradeStatus


logger = logging.getLogger(__name__)


# ============================================================
# VALID TRANSITIONS
# ============================================================

VALID_TRANSITIONS: Dict[TradeStatus, Set[TradeStatus]] = {
    TradeStatus.PENDING: {
        TradeStatus.FILLED,
        TradeStatus.PARTIAL_FILLED,
        TradeStatus.CANCELLED,
    },
    TradeStatus.PARTIAL_FILLED: {
        TradeStatus.FILLED,
        TradeStatus.CLOSED,
    },
    TradeStatus.FILLED: {
        TradeStatus.CLOSED,
    },
    TradeStatus.CLOSED: set(),
    TradeStatus.CANCELLED: set(),
}


# ============================================================
# TRADE STATE MACHINE
# ============================================================

class TradeStateMachine:
    """Checks transitions and explains denials."""

    @staticmethod
    def can_transition(
        from_status: TradeStatus,
        to_status: TradeStatus,
    ) -> Tuple[bool, str]:
        """
        Check if transition is allowed.

        Returns:
            Tuple of (allowed, reason)
        """
        if from_status == to_status:
            return True, "Same status"

        if to_status in VALID_TRANSITIONS.get(from_status, set()):
            return True, "Valid transition"

        if from_status.is_terminal():
            return False, f"Cannot transition from terminal status {from_status.value}"

        return False, f"Invalid transition: {from_status.value} -> {to_status.value}"

    @staticmethod
    def is_forward(from_status: TradeStatus, to_status: TradeStatus) -> bool:
        """Whether to_status is reachable from from_status (one or more steps)."""
        seen = set()
        frontier = [from_status]
        while frontier:
            current = frontier.pop()
            for nxt in VALID_TRANSITIONS.get(current, set()):
                if nxt == to_status:
                    return True
                if nxt not in seen:
                    seen.add(nxt)
                    frontier.append(nxt)
        return False

    @staticmethod
    def apply(
        trade: Trade,
        to_status: TradeStatus,
        fill_price: Optional[Decimal] = None,
        profit_loss: Optional[Decimal] = None,
    ) -> Trade:
        """Shorthand for apply_transition."""
        return apply_transition(trade, to_status, fill_price=fill_price, profit_loss=profit_loss)


# ============================================================
# APPLY TRANSITION
# ============================================================

def apply_transition(
    trade: Trade,
    to_status: TradeStatus,
    fill_price: Optional[Decimal] = None,
    profit_loss: Optional[Decimal] = None,
    reason: str = "",
    closing_order_id: Optional[str] = None,
    pnl_unknown: bool = False,
) -> Trade:
    """
    Return a copy of the trade in the target status.

    Args:
        trade: Current trade
        to_status: Target status
        fill_price: Fill price to record (required when entering a fill state
            without one already set)
        profit_loss: Realized P&L (required for CLOSED)
        reason: Logged with the transition
        closing_order_id: Sell order that closed the position
        pnl_unknown: Close without a P&L when the exit price is not known

    Raises:
        InvalidTransitionError: Transition not allowed or data missing
    """
    allowed, why = TradeStateMachine.can_transition(trade.status, to_status)
    if not allowed:
        raise InvalidTransitionError(trade.id, trade.status.value, to_status.value, why)

    changes = {"status": to_status}

    if fill_price is not None:
        changes["fill_price"] = fill_price
    if profit_loss is not None:
        changes["profit_loss"] = profit_loss
    if closing_order_id is not None:
        changes["closing_order_id"] = closing_order_id

    effective_fill = changes.get("fill_price", trade.fill_price)
    if to_status.has_fill() and effective_fill is None:
        raise InvalidTransitionError(
            trade.id, trade.status.value, to_status.value,
            f"fill_price required for {to_status.value}",
        )
    if (
        to_status == TradeStatus.CLOSED
        and not pnl_unknown
        and changes.get("profit_loss", trade.profit_loss) is None
    ):
        raise InvalidTransitionError(
            trade.id, trade.status.value, to_status.value,
            "profit_loss required for closed",
        )

    if trade.status == to_status and len(changes) == 1:
        return trade

    logger.info(
        f"Trade transition | id={trade.id} | symbol={trade.symbol} | "
        f"{trade.status.value} -> {to_status.value} | reason={reason or why}"
    )
    return trade.copy_with(**changes)
