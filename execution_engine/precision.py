"""
Execution Engine - Precision Formatter.

============================================================
PURPOSE
============================================================
Rounds prices and quantities to an instrument's rules and
renders them as exchange-safe fixed-point strings.

RULES:
- Price: nearest multiple of tick size (half up)
- Quantity: floor to base precision (never rounds up)
- Rendered decimals: the step's own fractional digits,
  or the configured per-symbol override, capped at 8
- Never scientific notation
- Formatting an already-formatted value is a no-op

No order may be placed without successful formatting.

============================================================
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_FLOOR, ROUND_HALF_UP
from typing import List, Optional, Union

from core.exceptions import ValidationFailedError
from .instruments import InstrumentCatalog
from .types import Instrument


logger = logging.getLogger(__name__)

MAX_DECIMALS = 8

Number = Union[Decimal, int, float, str]


# ============================================================
# NUMERIC HELPERS
# ============================================================

def to_decimal(value: Number) -> Decimal:
    """
    Convert to Decimal without binary float artifacts.

    Raises:
        ValueError: Not a finite number
    """
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValueError(f"not a number: {value!r}")
    if not result.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return result


def step_decimals(step: Decimal) -> int:
    """Number of fractional digits of a step size, capped at 8."""
    exponent = step.normalize().as_tuple().exponent
    if not isinstance(exponent, int) or exponent >= 0:
        return 0
    return min(-exponent, MAX_DECIMALS)


def render_fixed(value: Decimal, decimals: int, rounding: str) -> str:
    """Render with exactly `decimals` fractional digits."""
    decimals = max(0, min(decimals, MAX_DECIMALS))
    quantum = Decimal(1).scaleb(-decimals)
    return f"{value.quantize(quantum, rounding=rounding):f}"


def count_decimals(text: str) -> int:
    if "." not in text:
        return 0
    return len(text.split(".", 1)[1])


def is_multiple_of(value: Decimal, step: Decimal) -> bool:
    return value % step == 0


# ============================================================
# PURE FORMATTING
# ============================================================

def round_price(instrument: Instrument, raw_price: Number) -> str:
    """Round to the nearest tick and render."""
    price = to_decimal(raw_price)
    ticks = (price / instrument.tick_size).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    rounded = ticks * instrument.tick_size
    decimals = instrument.price_decimals
    if decimals is None:
        decimals = step_decimals(instrument.tick_size)
    return render_fixed(rounded, decimals, ROUND_HALF_UP)


def floor_quantity(instrument: Instrument, raw_quantity: Number) -> str:
    """Floor to the base precision and render."""
    quantity = to_decimal(raw_quantity)
    steps = (quantity / instrument.base_precision).to_integral_value(rounding=ROUND_FLOOR)
    floored = steps * instrument.base_precision
    decimals = instrument.quantity_decimals
    if decimals is None:
        decimals = step_decimals(instrument.base_precision)
    return render_fixed(floored, decimals, ROUND_FLOOR)


# ============================================================
# VALIDATION RESULT
# ============================================================

@dataclass
class OrderValidation:
    """Outcome of validating a (price, quantity) pair."""

    symbol: str
    valid: bool
    reasons: List[str] = field(default_factory=list)
    price: Optional[Decimal] = None
    quantity: Optional[Decimal] = None
    notional: Optional[Decimal] = None

    def __bool__(self) -> bool:
        return self.valid

    @property
    def reason(self) -> str:
        return "; ".join(self.reasons)

    def raise_if_invalid(self) -> None:
        if not self.valid:
            raise ValidationFailedError(
                self.symbol,
                self.reasons,
                context={
                    "price": str(self.price),
                    "quantity": str(self.quantity),
                    "notional": str(self.notional),
                },
            )


def validate_against(
    instrument: Instrument,
    price: Number,
    quantity: Number,
    check_price_step: bool = True,
) -> OrderValidation:
    """
    Validate a price/quantity pair against instrument rules.

    Args:
        instrument: Instrument rules
        price: Price (string or number)
        quantity: Quantity (string or number)
        check_price_step: Require price to sit on the tick grid

    Returns:
        OrderValidation with every failed rule listed
    """
    reasons: List[str] = []
    symbol = instrument.symbol

    parsed = {}
    for name, value in (("price", price), ("quantity", quantity)):
        text = value if isinstance(value, str) else (
            f"{value:f}" if isinstance(value, Decimal) else str(value)
        )
        if "e" in text.lower():
            reasons.append(f"{name} {text} uses scientific notation")
        try:
            number = to_decimal(value)
        except ValueError:
            reasons.append(f"{name} {text} is not a finite number")
            continue
        if number <= 0:
            reasons.append(f"{name} {text} must be positive")
        if count_decimals(f"{number:f}") > MAX_DECIMALS:
            reasons.append(f"{name} {text} has more than {MAX_DECIMALS} decimals")
        parsed[name] = number

    p = parsed.get("price")
    q = parsed.get("quantity")
    notional = None

    if p is not None and q is not None and p > 0 and q > 0:
        notional = p * q
        if notional < instrument.min_notional:
            reasons.append(
                f"notional {notional:f} below minimum {instrument.min_notional:f}"
            )
        if instrument.min_order_qty and q < instrument.min_order_qty:
            reasons.append(
                f"quantity {q:f} below minimum {instrument.min_order_qty:f}"
            )
        if not is_multiple_of(q, instrument.base_precision):
            reasons.append(
                f"quantity {q:f} not a multiple of {instrument.base_precision:f}"
            )
        if check_price_step and not is_multiple_of(p, instrument.tick_size):
            reasons.append(
                f"price {p:f} not a multiple of tick {instrument.tick_size:f}"
            )

    return OrderValidation(
        symbol=symbol,
        valid=not reasons,
        reasons=reasons,
        price=p,
        quantity=q,
        notional=notional,
    )


# ============================================================
# PRECISION FORMATTER
# ============================================================

class PrecisionFormatter:
    """
    Symbol-aware formatter backed by the instrument catalog.

    All operations raise MetadataUnavailableError when the
    symbol's rules cannot be fetched.
    """

    def __init__(self, catalog: InstrumentCatalog):
        self._catalog = catalog

    @property
    def catalog(self) -> InstrumentCatalog:
        return self._catalog

    async def format_price(self, symbol: str, raw_price: Number) -> str:
        instrument = await self._catalog.get(symbol)
        return round_price(instrument, raw_price)

    async def format_quantity(self, symbol: str, raw_quantity: Number) -> str:
        instrument = await self._catalog.get(symbol)
        return floor_quantity(instrument, raw_quantity)

    async def validate_order(
        self,
        symbol: str,
        price: Number,
        quantity: Number,
        check_price_step: bool = True,
    ) -> OrderValidation:
        instrument = await self._catalog.get(symbol)
        result = validate_against(instrument, price, quantity, check_price_step)
        if not result.valid:
            logger.info(
                f"Order validation failed | symbol={symbol} | price={price} | "
                f"quantity={quantity} | reasons={result.reason}"
            )
        return result

    async def calculate_quantity(
        self,
        symbol: str,
        order_amount: Number,
        price: Number,
    ) -> str:
        """
        Quantity purchasable for a quote amount, floored to base precision.

        Raises:
            ValueError: Non-positive price
        """
        price_dec = to_decimal(price)
        if price_dec <= 0:
            raise ValueError(f"price must be positive, got {price}")
        instrument = await self._catalog.get(symbol)
        return floor_quantity(instrument, to_decimal(order_amount) / price_dec)
