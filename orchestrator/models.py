"""
Orchestrator - Models.

============================================================
PURPOSE
============================================================
Result types for the trading loop.

- SymbolStage: where a symbol's evaluation stopped
- OutcomeStatus: what happened to the symbol this cycle
- SymbolOutcome: one symbol's result
- CycleResult: all symbols of one cycle

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from execution_engine.types import Signal


# ============================================================
# SYMBOL STAGES
# ============================================================

class SymbolStage(Enum):
    """Per-symbol pipeline stage, in order."""

    PRICE = "price"
    CANDLES = "candles"
    SIGNAL = "signal"
    GOVERNANCE = "governance"
    SIZING = "sizing"
    EXECUTION = "execution"


class OutcomeStatus(Enum):
    """Final status of a symbol within a cycle."""

    ORDER_PLACED = "order_placed"
    """Order accepted by the exchange and recorded."""

    NO_SIGNAL = "no_signal"
    """Signal generator produced nothing."""

    REJECTED = "rejected"
    """Placement governor refused the signal."""

    FAILED = "failed"
    """Gateway, formatting or execution failure."""

    SKIPPED = "skipped"
    """Previous evaluation of the symbol still running."""

    ERROR = "error"
    """Unexpected exception; logged with traceback."""


# ============================================================
# SYMBOL OUTCOME
# ============================================================

@dataclass
class SymbolOutcome:
    """Result of evaluating one symbol."""

    symbol: str
    status: OutcomeStatus
    stage: SymbolStage
    reason: str = ""
    signal: Optional[Signal] = None
    order_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "status": self.status.value,
            "stage": self.stage.value,
            "reason": self.reason,
            "signal_price": str(self.signal.price) if self.signal else None,
            "order_id": self.order_id,
        }


# ============================================================
# CYCLE RESULT
# ============================================================

@dataclass
class CycleResult:
    """Result of one decision cycle."""

    cycle_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    outcomes: List[SymbolOutcome] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        if self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return 0.0

    @property
    def orders_placed(self) -> int:
        return sum(1 for o in self.outcomes if o.status == OutcomeStatus.ORDER_PLACED)

    @property
    def errors(self) -> List[SymbolOutcome]:
        return [o for o in self.outcomes if o.status in (OutcomeStatus.FAILED, OutcomeStatus.ERROR)]

    def outcome_for(self, symbol: str) -> Optional[SymbolOutcome]:
        for outcome in self.outcomes:
            if outcome.symbol == symbol:
                return outcome
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "orders_placed": self.orders_placed,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }
