"""
Execution Engine - Instrument Catalog.

============================================================
PURPOSE
============================================================
Caches per-symbol trading rules fetched from the gateway.

- Lazy fetch on first use per symbol
- Entries expire after a TTL and are replaced wholesale
- Explicit invalidation (single symbol or everything)
- Per-symbol configuration overrides applied on fetch

One catalog instance per process, passed to the components
that need it.

============================================================
"""

import asyncio
import logging
from datetime import timedelta
from decimal import Decimal
from typing import Dict, Optional

from core.clock import ClockProtocol, SystemClock
from core.exceptions import MetadataUnavailableError
from .adapters.base import ExchangeGateway, InstrumentInfo
from .adapters.errors import ExchangeException
from .config import TradingConfig
from .types import Instrument


logger = logging.getLogger(__name__)


# ============================================================
# DEFAULTS
# ============================================================

DEFAULT_TICK_SIZE = Decimal("0.01")
DEFAULT_BASE_PRECISION = Decimal("0.0001")
DEFAULT_MIN_ORDER_QTY = Decimal("0")
DEFAULT_MIN_NOTIONAL = Decimal("10")
DEFAULT_TTL_SECONDS = 300


# ============================================================
# INSTRUMENT CATALOG
# ============================================================

class InstrumentCatalog:
    """Per-process cache of instrument rules."""

    def __init__(
        self,
        gateway: ExchangeGateway,
        config: Optional[TradingConfig] = None,
        clock: Optional[ClockProtocol] = None,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
    ):
        self._gateway = gateway
        self._config = config or TradingConfig()
        self._clock = clock or SystemClock()
        self._ttl = timedelta(seconds=ttl_seconds)

        self._cache: Dict[str, Instrument] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    # --------------------------------------------------------
    # LOOKUP
    # --------------------------------------------------------

    async def get(self, symbol: str) -> Instrument:
        """
        Get rules for a symbol, fetching on miss or expiry.

        Raises:
            MetadataUnavailableError: Gateway failed or returned unusable rules
        """
        cached = self.peek(symbol)
        if cached is not None:
            return cached

        lock = self._locks.setdefault(symbol, asyncio.Lock())
        async with lock:
            cached = self.peek(symbol)
            if cached is not None:
                return cached

            try:
                info = await self._gateway.get_instrument_info(symbol)
            except ExchangeException as e:
                logger.warning(f"Instrument fetch failed | symbol={symbol} | error={e}")
                raise MetadataUnavailableError(symbol, str(e), cause=e)

            instrument = self._build(symbol, info)
            self._cache[symbol] = instrument
            logger.info(
                f"Instrument cached | symbol={symbol} | tick={instrument.tick_size} | "
                f"base_precision={instrument.base_precision} | min_notional={instrument.min_notional}"
            )
            return instrument

    def peek(self, symbol: str) -> Optional[Instrument]:
        """Return the cached entry if present and fresh, without fetching."""
        instrument = self._cache.get(symbol)
        if instrument is None:
            return None
        if self._clock.now() - instrument.fetched_at >= self._ttl:
            return None
        return instrument

    # --------------------------------------------------------
    # INVALIDATION
    # --------------------------------------------------------

    def invalidate(self, symbol: str) -> None:
        if self._cache.pop(symbol, None) is not None:
            logger.info(f"Instrument cache invalidated | symbol={symbol}")

    def invalidate_all(self) -> None:
        count = len(self._cache)
        self._cache.clear()
        logger.info(f"Instrument cache cleared | entries={count}")

    @property
    def cached_symbols(self):
        return sorted(self._cache)

    # --------------------------------------------------------
    # CONSTRUCTION
    # --------------------------------------------------------

    def _build(self, symbol: str, info: InstrumentInfo) -> Instrument:
        config = self._config

        tick_size = info.tick_size if info.tick_size and info.tick_size > 0 else DEFAULT_TICK_SIZE
        base_precision = (
            info.base_precision if info.base_precision and info.base_precision > 0
            else DEFAULT_BASE_PRECISION
        )
        if symbol in config.quantity_increment_per_symbol:
            base_precision = config.quantity_increment_per_symbol[symbol]

        min_notional = (
            info.min_order_amount if info.min_order_amount is not None
            else DEFAULT_MIN_NOTIONAL
        )
        if symbol in config.minimum_notional_per_symbol:
            min_notional = config.minimum_notional_per_symbol[symbol]

        try:
            return Instrument(
                symbol=symbol,
                tick_size=tick_size,
                base_precision=base_precision,
                min_notional=min_notional,
                min_order_qty=info.min_order_qty or DEFAULT_MIN_ORDER_QTY,
                price_decimals=config.price_decimals_per_symbol.get(symbol),
                quantity_decimals=config.quantity_decimals_per_symbol.get(symbol),
                fetched_at=self._clock.now(),
            )
        except ValueError as e:
            raise MetadataUnavailableError(symbol, str(e), cause=e)
