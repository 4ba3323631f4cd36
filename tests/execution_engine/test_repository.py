"""
Trade Repository Tests.

============================================================
PURPOSE
============================================================
Both repository implementations run the same behavioral
tests: in-memory and SQLAlchemy over in-memory sqlite.

============================================================
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from execution_engine.repository import (
    InMemoryTradeRepository,
    RepositoryError,
    SqlAlchemyTradeRepository,
)
from execution_engine.types import (
    Signal,
    SignalKind,
    Trade,
    TradeFilter,
    TradeSide,
    TradeStatus,
)


BASE_TIME = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sqlite"])
def repository(request):
    if request.param == "memory":
        return InMemoryTradeRepository()
    return SqlAlchemyTradeRepository.from_url("sqlite:///:memory:")


def make_trade(symbol="BTCUSDT", status=TradeStatus.PENDING, order_id=None, minutes=0,
               side=TradeSide.BUY):
    return Trade(
        symbol=symbol,
        side=side,
        quantity=Decimal("0.5"),
        submitted_price=Decimal("100.25"),
        status=status,
        fill_price=Decimal("100.1") if status.has_fill() else None,
        profit_loss=Decimal("1.5") if status == TradeStatus.CLOSED else None,
        exchange_order_id=order_id,
        created_at=BASE_TIME + timedelta(minutes=minutes),
        updated_at=BASE_TIME + timedelta(minutes=minutes),
    )


# ============================================================
# TRADE TESTS
# ============================================================

class TestTrades:
    """Trade persistence."""

    def test_upsert_and_get(self, repository):
        trade = make_trade(order_id="ord-1")

        repository.upsert_trade(trade)
        loaded = repository.get_trade(trade.id)

        assert loaded.id == trade.id
        assert loaded.symbol == "BTCUSDT"
        assert loaded.side == TradeSide.BUY
        assert loaded.status == TradeStatus.PENDING
        assert loaded.quantity == Decimal("0.5")
        assert loaded.submitted_price == Decimal("100.25")
        assert loaded.fill_price is None
        assert loaded.created_at == BASE_TIME

    def test_upsert_replaces(self, repository):
        trade = make_trade(order_id="ord-1")
        repository.upsert_trade(trade)

        repository.upsert_trade(trade.copy_with(status=TradeStatus.FILLED, fill_price=Decimal("100.2")))

        loaded = repository.get_trade(trade.id)
        assert loaded.status == TradeStatus.FILLED
        assert loaded.fill_price == Decimal("100.2")
        assert len(repository.query_trades()) == 1

    def test_get_unknown_returns_none(self, repository):
        assert repository.get_trade("trd_missing") is None
        assert repository.find_by_order_id("missing") is None

    def test_find_by_order_id(self, repository):
        trade = make_trade(order_id="ord-42")
        repository.upsert_trade(trade)

        assert repository.find_by_order_id("ord-42").id == trade.id

    def test_duplicate_order_id_rejected(self, repository):
        repository.upsert_trade(make_trade(order_id="ord-1"))

        with pytest.raises(RepositoryError):
            repository.upsert_trade(make_trade(order_id="ord-1"))

    def test_query_filters(self, repository):
        repository.upsert_trade(make_trade("BTCUSDT", TradeStatus.FILLED, "a", minutes=0))
        repository.upsert_trade(make_trade("ETHUSDT", TradeStatus.PENDING, "b", minutes=10))
        repository.upsert_trade(make_trade("BTCUSDT", TradeStatus.CLOSED, "c", minutes=20))
        repository.upsert_trade(make_trade("BTCUSDT", TradeStatus.FILLED, "d", minutes=30, side=TradeSide.SELL))

        btc = repository.query_trades(TradeFilter(symbol="BTCUSDT"))
        assert [t.exchange_order_id for t in btc] == ["a", "c", "d"]

        recent = repository.query_trades(TradeFilter(created_after=BASE_TIME + timedelta(minutes=5)))
        assert [t.exchange_order_id for t in recent] == ["b", "c", "d"]

        older = repository.query_trades(TradeFilter(created_before=BASE_TIME + timedelta(minutes=10)))
        assert [t.exchange_order_id for t in older] == ["a", "b"]

        sells = repository.query_trades(TradeFilter(side=TradeSide.SELL))
        assert [t.exchange_order_id for t in sells] == ["d"]

    def test_open_trades(self, repository):
        repository.upsert_trade(make_trade(status=TradeStatus.PENDING, order_id="a"))
        repository.upsert_trade(make_trade(status=TradeStatus.FILLED, order_id="b", minutes=1))
        repository.upsert_trade(make_trade(status=TradeStatus.CLOSED, order_id="c", minutes=2))
        repository.upsert_trade(make_trade(status=TradeStatus.CANCELLED, order_id="d", minutes=3))
        repository.upsert_trade(make_trade("ETHUSDT", TradeStatus.FILLED, "e", minutes=4))

        assert [t.exchange_order_id for t in repository.open_trades("BTCUSDT")] == ["a", "b"]
        assert len(repository.open_trades()) == 3

    def test_closed_trade_round_trip(self, repository):
        trade = make_trade(status=TradeStatus.CLOSED, order_id="buy-1").copy_with(
            closing_order_id="sell-1", notes="closed by test",
        )
        repository.upsert_trade(trade)

        loaded = repository.get_trade(trade.id)

        assert loaded.profit_loss == Decimal("1.5")
        assert loaded.closing_order_id == "sell-1"
        assert loaded.notes == "closed by test"


# ============================================================
# SIGNAL TESTS
# ============================================================

class TestSignals:
    """Signal persistence."""

    def test_insert_and_mark_processed(self, repository):
        signal = Signal(
            symbol="BTCUSDT",
            price=Decimal("100.20"),
            confidence=0.85,
            reasoning="NEW POSITION: test",
            kind=SignalKind.SUPPORT_ENTRY,
            support_level=Decimal("100.10"),
        )

        repository.insert_signal(signal)
        assert [s.id for s in repository.list_signals(processed=False)] == [signal.id]

        repository.mark_signal_processed(signal.id)

        assert repository.list_signals(processed=False) == []
        processed = repository.list_signals(symbol="BTCUSDT", processed=True)
        assert processed[0].price == Decimal("100.20")
        assert processed[0].kind == SignalKind.SUPPORT_ENTRY

    def test_mark_unknown_signal_raises(self, repository):
        with pytest.raises(RepositoryError):
            repository.mark_signal_processed("sig_missing")


# ============================================================
# USER CONFIGURATION TESTS
# ============================================================

class TestUserConfig:
    """Stored per-user configuration rows."""

    def test_missing_user_is_empty(self, repository):
        assert repository.read_config("user-1") == {}

    def test_save_and_read(self, repository):
        repository.save_config("user-1", {
            "max_active_pairs": 3,
            "max_order_amount_usd": Decimal("25.5"),
            "trading_pairs": ["BTCUSDT"],
            "minimum_notional_per_symbol": {"BTCUSDT": Decimal("5")},
        })

        stored = repository.read_config("user-1")

        assert stored == {
            "max_active_pairs": 3,
            "max_order_amount_usd": "25.5",
            "trading_pairs": ["BTCUSDT"],
            "minimum_notional_per_symbol": {"BTCUSDT": "5"},
        }

    def test_save_replaces(self, repository):
        repository.save_config("user-1", {"max_active_pairs": 3})
        repository.save_config("user-1", {"max_positions_per_symbol": 1})

        assert repository.read_config("user-1") == {"max_positions_per_symbol": 1}


class TestInMemoryIsolation:
    """In-memory store returns copies."""

    def test_returned_trade_is_a_copy(self):
        repository = InMemoryTradeRepository()
        trade = make_trade(order_id="ord-1")
        repository.upsert_trade(trade)

        loaded = repository.get_trade(trade.id)
        loaded.status = TradeStatus.CANCELLED

        assert repository.get_trade(trade.id).status == TradeStatus.PENDING
        assert repository.write_count == 1
