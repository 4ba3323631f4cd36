"""
Strategy Engine Module.

============================================================
SPOT TRADING CORE
Strategy Engine - Entry Signal Generation
============================================================

PURPOSE
-------
Propose buy entries near detected support levels, and average
down existing positions when price returns near the last
purchase.

DESIGN PRINCIPLES
-----------------
1. Deterministic: Rule-based, no adaptive behavior
2. Explicit Outputs: Always returns a Signal OR a rejection reason
3. Exchange-Safe: Every proposed price is tick-formatted

============================================================
USAGE EXAMPLE
============================================================

```python
from strategy_engine import SignalGenerator

generator = SignalGenerator(formatter, config)
result = await generator.generate_entry_signal("BTCUSDT", price, candles)
if result:
    print(result.signal.price, result.signal.reasoning)
else:
    print(result.reason)
```

============================================================
"""

from .types import SignalResult, SupportLevel
from .support import SupportLevelAnalyzer
from .signal_generator import SignalGenerator


__all__ = [
    # Types
    "SignalResult",
    "SupportLevel",

    # Analysis
    "SupportLevelAnalyzer",

    # Generation
    "SignalGenerator",
]


# ============================================================
# MODULE VERSION
# ============================================================

__version__ = "1.0.0"
