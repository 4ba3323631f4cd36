"""
Precision Formatter Tests.

============================================================
PURPOSE
============================================================
Tests for price/quantity rounding, rendering and validation.

TEST CATEGORIES:
- Rounding tests: Tick and base-precision rules
- Rendering tests: Fixed-point output, decimal overrides
- Validation tests: Every rejection reason
- Formatter tests: Catalog-backed async API

============================================================
"""

from decimal import Decimal

import pytest

from core.exceptions import MetadataUnavailableError, ValidationFailedError
from execution_engine.adapters import MockExchangeGateway
from execution_engine.instruments import InstrumentCatalog
from execution_engine.precision import (
    PrecisionFormatter,
    floor_quantity,
    round_price,
    step_decimals,
    validate_against,
)
from execution_engine.types import Instrument


@pytest.fixture
def instrument():
    return Instrument(
        symbol="BTCUSDT",
        tick_size=Decimal("0.01"),
        base_precision=Decimal("0.001"),
        min_notional=Decimal("10"),
    )


@pytest.fixture
def gateway():
    gateway = MockExchangeGateway()
    gateway.set_instrument("BTCUSDT", tick_size="0.01", base_precision="0.0001")
    return gateway


@pytest.fixture
def formatter(gateway):
    return PrecisionFormatter(InstrumentCatalog(gateway))


# ============================================================
# ROUNDING TESTS
# ============================================================

class TestRounding:
    """Tests for round_price and floor_quantity."""

    def test_price_rounds_to_nearest_tick(self, instrument):
        assert round_price(instrument, "123.4567") == "123.46"
        assert round_price(instrument, "123.4549") == "123.45"

    def test_price_rounds_half_up(self, instrument):
        assert round_price(instrument, "0.125") == "0.13"

    def test_price_with_coarse_tick(self):
        coarse = Instrument("ETHUSDT", Decimal("0.5"), Decimal("0.01"), Decimal("5"))

        assert round_price(coarse, "10.26") == "10.5"
        assert round_price(coarse, "10.24") == "10.0"

    def test_quantity_never_rounds_up(self, instrument):
        assert floor_quantity(instrument, "0.0019999") == "0.001"
        assert floor_quantity(instrument, "0.999999") == "0.999"

    def test_float_input_has_no_binary_artifacts(self, instrument):
        assert round_price(instrument, 0.1 + 0.2) == "0.30"

    def test_formatting_is_idempotent(self, instrument):
        once = round_price(instrument, "98765.4321")

        assert round_price(instrument, once) == once
        assert floor_quantity(instrument, floor_quantity(instrument, "1.23456")) == "1.234"

    def test_non_numeric_raises(self, instrument):
        with pytest.raises(ValueError):
            round_price(instrument, "abc")
        with pytest.raises(ValueError):
            floor_quantity(instrument, "inf")


# ============================================================
# RENDERING TESTS
# ============================================================

class TestRendering:
    """Tests for fixed-point rendering."""

    def test_tiny_values_use_fixed_point(self):
        fine = Instrument("SHIBUSDT", Decimal("0.00000001"), Decimal("0.00000001"), Decimal("1"))

        rendered = floor_quantity(fine, "0.00000005")

        assert rendered == "0.00000005"
        assert "e" not in rendered.lower()

    def test_large_values_use_fixed_point(self, instrument):
        assert round_price(instrument, "12345678.9") == "12345678.90"

    def test_decimal_overrides(self):
        overridden = Instrument(
            "BTCUSDT",
            Decimal("0.01"),
            Decimal("0.001"),
            Decimal("10"),
            price_decimals=4,
            quantity_decimals=1,
        )

        assert round_price(overridden, "123.4567") == "123.4600"
        assert floor_quantity(overridden, "1.789") == "1.7"

    def test_step_decimals(self):
        assert step_decimals(Decimal("0.01")) == 2
        assert step_decimals(Decimal("0.0100")) == 2
        assert step_decimals(Decimal("1")) == 0
        assert step_decimals(Decimal("10")) == 0
        assert step_decimals(Decimal("0.000000001")) == 8


# ============================================================
# VALIDATION TESTS
# ============================================================

class TestValidation:
    """Tests for validate_against."""

    def test_valid_order(self, instrument):
        result = validate_against(instrument, "100.00", "0.500")

        assert result.valid
        assert result.notional == Decimal("50.00000")
        assert result.reason == ""

    def test_below_min_notional(self, instrument):
        price = round_price(instrument, "123.4567")

        result = validate_against(instrument, price, "0.001")

        assert price == "123.46"
        assert not result
        assert "below minimum" in result.reason

    def test_scientific_notation_rejected(self, instrument):
        result = validate_against(instrument, "1E+2", "0.500")

        assert "uses scientific notation" in result.reason

    def test_non_finite_rejected(self, instrument):
        result = validate_against(instrument, "nan", "0.500")

        assert "not a finite number" in result.reason

    def test_non_positive_rejected(self, instrument):
        result = validate_against(instrument, "-1", "0")

        assert result.reason.count("must be positive") == 2

    def test_too_many_decimals(self, instrument):
        result = validate_against(instrument, "100.000000001", "0.500")

        assert "more than 8 decimals" in result.reason

    def test_quantity_off_grid(self, instrument):
        result = validate_against(instrument, "100.00", "0.5005")

        assert "not a multiple of 0.001" in result.reason

    def test_price_off_tick(self, instrument):
        result = validate_against(instrument, "100.005", "0.500")

        assert "not a multiple of tick" in result.reason

    def test_price_step_check_can_be_skipped(self, instrument):
        result = validate_against(instrument, "100.005", "0.500", check_price_step=False)

        assert result.valid

    def test_min_order_qty(self):
        strict = Instrument("BTCUSDT", Decimal("0.01"), Decimal("0.001"), Decimal("1"),
                            min_order_qty=Decimal("0.01"))

        result = validate_against(strict, "1000.00", "0.005")

        assert "quantity 0.005 below minimum 0.01" in result.reason

    def test_all_reasons_reported(self, instrument):
        result = validate_against(instrument, "100.005", "0.0005")

        assert len(result.reasons) == 3

    def test_raise_if_invalid(self, instrument):
        result = validate_against(instrument, "100.00", "0.001")

        with pytest.raises(ValidationFailedError) as exc_info:
            result.raise_if_invalid()
        assert exc_info.value.symbol == "BTCUSDT"


# ============================================================
# FORMATTER TESTS
# ============================================================

class TestPrecisionFormatter:
    """Tests for PrecisionFormatter."""

    @pytest.mark.asyncio
    async def test_format_price_and_quantity(self, formatter):
        assert await formatter.format_price("BTCUSDT", "43000.456") == "43000.46"
        assert await formatter.format_quantity("BTCUSDT", "0.123456") == "0.1234"

    @pytest.mark.asyncio
    async def test_validate_order(self, formatter):
        result = await formatter.validate_order("BTCUSDT", "100.00", "0.0500")

        assert not result.valid
        assert "notional" in result.reason

    @pytest.mark.asyncio
    async def test_calculate_quantity(self, formatter):
        quantity = await formatter.calculate_quantity("BTCUSDT", Decimal("100"), "100.20")

        assert quantity == "0.9980"

    @pytest.mark.asyncio
    async def test_calculate_quantity_rejects_zero_price(self, formatter):
        with pytest.raises(ValueError, match="price must be positive"):
            await formatter.calculate_quantity("BTCUSDT", Decimal("100"), "0")

    @pytest.mark.asyncio
    async def test_metadata_unavailable_blocks_formatting(self, gateway, formatter):
        gateway.fail_next("get_instrument_info")

        with pytest.raises(MetadataUnavailableError):
            await formatter.format_price("BTCUSDT", "100")
