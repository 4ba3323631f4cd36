"""
Orchestrator Package.

============================================================
PURPOSE
============================================================
Runs the decision loop and exposes the command-line entry
point.

- core: TradingLoop and logging setup
- models: Cycle and per-symbol result types
- cli: argparse entry point (trading-core)

============================================================
"""

from .models import CycleResult, OutcomeStatus, SymbolOutcome, SymbolStage
from .core import TradingLoop, setup_logging


__all__ = [
    "CycleResult",
    "OutcomeStatus",
    "SymbolOutcome",
    "SymbolStage",
    "TradingLoop",
    "setup_logging",
]
