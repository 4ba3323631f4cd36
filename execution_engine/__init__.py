"""
Execution Engine Package.

============================================================
PURPOSE
============================================================
Turns approved entry signals into exchange-safe orders and
keeps local trade records honest.

CRITICAL PRINCIPLE:
    "No order leaves without successful formatting."
    "The exchange is the ground truth for order state."

AUTHORITY BOUNDARIES:
    CAN:
        - Format and validate prices and quantities
        - Submit buy/sell orders
        - Record pending trades
        - Reconcile trades against exchange history
        - Close positions and book realized P&L

    MUST NOT:
        - Generate trade ideas
        - Bypass the placement governor
        - Delete exchange-confirmed trades

============================================================
MODULES
============================================================
- types: Trades, signals, instruments, results
- config: Trading configuration
- instruments: Instrument rule cache
- precision: Price/quantity formatting and validation
- state_machine: Trade status lifecycle
- executor: Order submission
- pnl: Side-aware P&L
- reconciliation: Exchange/local trade diffing
- position_closer: Manual and end-of-day closing
- models / repository: Persistence
- adapters: Exchange gateways (Bybit, Mock)

============================================================
"""

from .types import (
    TradeSide,
    OrderType,
    TradeStatus,
    OPEN_STATUSES,
    Instrument,
    Candle,
    Trade,
    TradeFilter,
    SignalKind,
    Signal,
    ExecutionResult,
    PositionView,
)
from .config import (
    ExchangeConfig,
    TradingConfig,
    load_config_from_env,
)
from .instruments import InstrumentCatalog
from .precision import (
    OrderValidation,
    PrecisionFormatter,
    round_price,
    floor_quantity,
    validate_against,
)
from .state_machine import (
    VALID_TRANSITIONS,
    TradeStateMachine,
    apply_transition,
)
from .executor import OrderExecutor
from .pnl import (
    PnLResult,
    PnLCalculator,
    TradeMetrics,
    calculate_trade_metrics,
)
from .repository import (
    RepositoryError,
    TradeRepository,
    InMemoryTradeRepository,
    SqlAlchemyTradeRepository,
    create_repository_engine,
)
from .reconciliation import (
    DiscrepancyType,
    ReconciliationEntry,
    ReconciliationReport,
    ReconciliationEngine,
)
from .position_closer import (
    CloseResult,
    EndOfDayReport,
    PositionCloser,
)


__all__ = [
    # Types
    "TradeSide",
    "OrderType",
    "TradeStatus",
    "OPEN_STATUSES",
    "Instrument",
    "Candle",
    "Trade",
    "TradeFilter",
    "SignalKind",
    "Signal",
    "ExecutionResult",
    "PositionView",

    # Config
    "ExchangeConfig",
    "TradingConfig",
    "load_config_from_env",

    # Precision
    "InstrumentCatalog",
    "OrderValidation",
    "PrecisionFormatter",
    "round_price",
    "floor_quantity",
    "validate_against",

    # State machine
    "VALID_TRANSITIONS",
    "TradeStateMachine",
    "apply_transition",

    # Execution
    "OrderExecutor",

    # P&L
    "PnLResult",
    "PnLCalculator",
    "TradeMetrics",
    "calculate_trade_metrics",

    # Persistence
    "RepositoryError",
    "TradeRepository",
    "InMemoryTradeRepository",
    "SqlAlchemyTradeRepository",
    "create_repository_engine",

    # Reconciliation
    "DiscrepancyType",
    "ReconciliationEntry",
    "ReconciliationReport",
    "ReconciliationEngine",

    # Closing
    "CloseResult",
    "EndOfDayReport",
    "PositionCloser",
]
