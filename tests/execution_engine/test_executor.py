"""
Order Executor Tests.

============================================================
PURPOSE
============================================================
Tests for order formatting, submission and failure reporting.

TEST CATEGORIES:
- Success path: Formatted values sent and persisted
- Pre-flight failures: Metadata, input, validation
- Exchange failures: Errors, timeouts, missing order id
- In-flight guard

============================================================
"""

import asyncio
from decimal import Decimal

import pytest

from execution_engine.adapters import MockConfig, MockExchangeGateway, PlaceOrderResult
from execution_engine.executor import OrderExecutor
from execution_engine.instruments import InstrumentCatalog
from execution_engine.precision import PrecisionFormatter
from execution_engine.repository import InMemoryTradeRepository, RepositoryError
from execution_engine.types import OrderType, TradeSide, TradeStatus


@pytest.fixture
def gateway():
    gateway = MockExchangeGateway()
    gateway.set_instrument("BTCUSDT", tick_size="0.01", base_precision="0.0001", min_order_amount="10")
    return gateway


@pytest.fixture
def repository():
    return InMemoryTradeRepository()


@pytest.fixture
def executor(gateway, repository):
    formatter = PrecisionFormatter(InstrumentCatalog(gateway))
    return OrderExecutor(gateway, formatter, repository, timeout_seconds=0.5)


# ============================================================
# SUCCESS PATH
# ============================================================

class TestExecuteSuccess:
    """Tests for successful submissions."""

    @pytest.mark.asyncio
    async def test_buy_sends_formatted_values(self, executor, gateway, repository):
        result = await executor.execute_buy("BTCUSDT", "0.123456", "123.4567")

        assert result.success
        assert result.formatted_price == "123.46"
        assert result.formatted_quantity == "0.1234"

        request = gateway.placed_requests[0]
        assert request.price == "123.46"
        assert request.quantity == "0.1234"
        assert request.side == TradeSide.BUY

        trade = repository.find_by_order_id(result.order_id)
        assert trade.status == TradeStatus.PENDING
        assert trade.submitted_price == Decimal("123.46")
        assert trade.quantity == Decimal("0.1234")
        assert result.trade.id == trade.id

    @pytest.mark.asyncio
    async def test_market_sell_sends_no_price(self, executor, gateway):
        result = await executor.execute_sell("BTCUSDT", "1", "100.005", order_type=OrderType.MARKET)

        assert result.success
        assert gateway.placed_requests[0].price is None
        assert gateway.placed_requests[0].side == TradeSide.SELL
        assert result.trade.order_type == OrderType.MARKET
        assert result.formatted_price is None
        assert result.trade.submitted_price == Decimal("100.005")

    @pytest.mark.asyncio
    async def test_raw_inputs_kept(self, executor):
        result = await executor.execute_buy("BTCUSDT", Decimal("0.5"), Decimal("100"))

        assert result.raw_inputs == {
            "symbol": "BTCUSDT",
            "side": "buy",
            "order_type": "limit",
            "quantity": "0.5",
            "price": "100",
        }


# ============================================================
# PRE-FLIGHT FAILURES
# ============================================================

class TestPreflightFailures:
    """Failures before anything reaches the exchange."""

    @pytest.mark.asyncio
    async def test_metadata_unavailable(self, executor, gateway, repository):
        gateway.fail_next("get_instrument_info")

        result = await executor.execute_buy("BTCUSDT", "1", "100")

        assert not result.success
        assert result.error_code == "METADATA_UNAVAILABLE"
        assert gateway.placed_requests == []
        assert repository.query_trades() == []

    @pytest.mark.asyncio
    async def test_invalid_input(self, executor, gateway):
        result = await executor.execute_buy("BTCUSDT", "abc", "100")

        assert result.error_code == "INVALID_INPUT"
        assert gateway.placed_requests == []

    @pytest.mark.asyncio
    async def test_below_min_notional(self, executor, gateway):
        result = await executor.execute_buy("BTCUSDT", "0.001", "123.4567")

        assert result.error_code == "VALIDATION_FAILED"
        assert "below minimum" in result.error
        assert result.formatted_price == "123.46"
        assert result.formatted_quantity == "0.0010"
        assert gateway.placed_requests == []

    @pytest.mark.asyncio
    async def test_quantity_floored_to_zero(self, executor):
        result = await executor.execute_buy("BTCUSDT", "0.00001", "100")

        assert result.error_code == "VALIDATION_FAILED"
        assert "must be positive" in result.error

    @pytest.mark.asyncio
    async def test_failures_are_recorded(self, executor):
        await executor.execute_buy("BTCUSDT", "0.001", "100")

        assert len(executor.recent_failures) == 1
        assert executor.recent_failures[0].error_code == "VALIDATION_FAILED"


# ============================================================
# EXCHANGE FAILURES
# ============================================================

class TestExchangeFailures:
    """Failures reported by the gateway."""

    @pytest.mark.asyncio
    async def test_gateway_error(self, executor, gateway, repository):
        gateway.fail_next("place_order")

        result = await executor.execute_buy("BTCUSDT", "1", "100")

        assert not result.success
        assert result.error_code == "MOCK_NETWORK_ERROR"
        assert result.error.startswith("Gateway error:")
        assert repository.query_trades() == []

    @pytest.mark.asyncio
    async def test_missing_order_id(self, executor, gateway, repository):
        gateway.omit_next_order_id()

        result = await executor.execute_buy("BTCUSDT", "1", "100")

        assert result.error_code == "MISSING_ORDER_ID"
        assert repository.query_trades() == []

    @pytest.mark.asyncio
    async def test_rejected_response(self, executor, gateway):
        async def reject(request):
            return PlaceOrderResult(success=False, error_message="insufficient balance")

        gateway.place_order = reject

        result = await executor.execute_buy("BTCUSDT", "1", "100")

        assert result.error_code == "REJECTED"
        assert "insufficient balance" in result.error

    @pytest.mark.asyncio
    async def test_accepted_order_not_stored(self, gateway):
        class UnwritableRepository(InMemoryTradeRepository):
            def upsert_trade(self, trade):
                raise RepositoryError("database is locked")

        formatter = PrecisionFormatter(InstrumentCatalog(gateway))
        executor = OrderExecutor(gateway, formatter, UnwritableRepository(), timeout_seconds=0.5)

        result = await executor.execute_buy("BTCUSDT", "1", "100")

        assert result.success
        assert result.error_code == "PERSIST_FAILED"
        assert result.order_id in gateway.orders
        assert result.error == f"Order {result.order_id} accepted but not stored: database is locked"
        assert not executor.is_in_flight("BTCUSDT")

    @pytest.mark.asyncio
    async def test_timeout(self, gateway, repository):
        slow = MockExchangeGateway(MockConfig(latency_seconds=0.2))
        formatter = PrecisionFormatter(InstrumentCatalog(gateway))
        executor = OrderExecutor(slow, formatter, repository, timeout_seconds=0.05)

        result = await executor.execute_buy("BTCUSDT", "1", "100")

        assert result.error_code == "GATEWAY_TIMEOUT"
        assert repository.query_trades() == []


# ============================================================
# IN-FLIGHT GUARD
# ============================================================

class TestInFlight:
    """At most one submission per symbol at a time."""

    @pytest.mark.asyncio
    async def test_concurrent_submission_rejected(self, repository):
        gateway = MockExchangeGateway(MockConfig(latency_seconds=0.05))
        formatter = PrecisionFormatter(InstrumentCatalog(gateway))
        executor = OrderExecutor(gateway, formatter, repository, timeout_seconds=1.0)

        first, second = await asyncio.gather(
            executor.execute_buy("BTCUSDT", "1", "100"),
            executor.execute_buy("BTCUSDT", "1", "99"),
        )

        assert first.success
        assert second.error_code == "ORDER_IN_FLIGHT"
        assert not executor.is_in_flight("BTCUSDT")
        assert len(repository.query_trades()) == 1
