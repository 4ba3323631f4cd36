"""
Strategy Engine - Type Definitions.

============================================================
PURPOSE
============================================================
Data contracts for support detection and entry signals.

============================================================
CORE CONCEPTS
============================================================
1. SUPPORT LEVEL: Price zone touched repeatedly by candle lows
2. SIGNAL RESULT: A signal, or the explicit reason there is none

============================================================
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from execution_engine.types import Signal, SignalKind


# ============================================================
# SUPPORT LEVEL
# ============================================================

@dataclass(frozen=True)
class SupportLevel:
    """A detected support zone."""

    price: Decimal
    """Average of the lows in the zone."""

    touches: int
    """Number of candle lows inside the zone."""

    strength: float
    """Composite score in [0, 1]."""

    last_touch_index: int
    """Index of the most recent touching candle in the window."""

    is_fallback: bool = False
    """Derived from the lowest low rather than repeated touches."""


# ============================================================
# SIGNAL RESULT
# ============================================================

@dataclass
class SignalResult:
    """
    Outcome of one signal evaluation.

    Exactly one of `signal` or a rejection `reason` is meaningful.
    """

    symbol: str
    signal: Optional[Signal] = None
    reason: str = ""
    kind: Optional[SignalKind] = None

    @property
    def generated(self) -> bool:
        return self.signal is not None

    def __bool__(self) -> bool:
        return self.generated

    @classmethod
    def rejected(cls, symbol: str, reason: str, kind: Optional[SignalKind] = None) -> "SignalResult":
        return cls(symbol=symbol, reason=reason, kind=kind)
