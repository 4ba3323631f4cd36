"""
Execution Engine - Trade Repository.

============================================================
PURPOSE
============================================================
Storage collaborator for trades, signals and stored per-user
configuration.

IMPLEMENTATIONS:
- InMemoryTradeRepository: lock-protected dicts (tests, dry runs)
- SqlAlchemyTradeRepository: any SQLAlchemy database URL

SEMANTICS:
- Safe concurrent reads
- Last-writer-wins on updates (whole-record upsert)
- Writes raise RepositoryError on failure, never fail silently

============================================================
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Generator, List, Optional

from sqlalchemy import create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from core.clock import ensure_utc
from core.exceptions import TradingException, Severity
from .models import Base, SignalModel, TradeModel, UserConfigModel
from .types import (
    OrderType,
    Signal,
    SignalKind,
    Trade,
    TradeFilter,
    TradeSide,
    TradeStatus,
)


logger = logging.getLogger(__name__)


class RepositoryError(TradingException):
    """Persistence operation failed."""

    default_severity = Severity.HIGH


def _json_safe(value: Any) -> Any:
    """Decimals become strings so configuration rows serialize as JSON."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


# ============================================================
# REPOSITORY INTERFACE
# ============================================================

class TradeRepository(ABC):
    """Abstract trade/signal store."""

    @abstractmethod
    def upsert_trade(self, trade: Trade) -> Trade:
        """Insert or replace a trade by id."""
        pass

    @abstractmethod
    def get_trade(self, trade_id: str) -> Optional[Trade]:
        pass

    @abstractmethod
    def find_by_order_id(self, exchange_order_id: str) -> Optional[Trade]:
        pass

    @abstractmethod
    def query_trades(self, trade_filter: Optional[TradeFilter] = None) -> List[Trade]:
        """Trades matching the filter, oldest first."""
        pass

    @abstractmethod
    def insert_signal(self, signal: Signal) -> Signal:
        pass

    @abstractmethod
    def list_signals(self, symbol: Optional[str] = None, processed: Optional[bool] = None) -> List[Signal]:
        pass

    @abstractmethod
    def mark_signal_processed(self, signal_id: str) -> None:
        pass

    @abstractmethod
    def read_config(self, user_id: str) -> Dict[str, Any]:
        """Stored configuration row for a user; empty when none is stored."""
        pass

    @abstractmethod
    def save_config(self, user_id: str, settings: Dict[str, Any]) -> None:
        """Replace a user's stored configuration row."""
        pass

    def open_trades(self, symbol: Optional[str] = None) -> List[Trade]:
        return self.query_trades(TradeFilter(
            symbol=symbol,
            statuses=frozenset({TradeStatus.PENDING, TradeStatus.PARTIAL_FILLED, TradeStatus.FILLED}),
        ))


# ============================================================
# IN-MEMORY REPOSITORY
# ============================================================

class InMemoryTradeRepository(TradeRepository):
    """Thread-safe in-memory store. Returns copies, never shared objects."""

    def __init__(self):
        self._lock = threading.RLock()
        self._trades: Dict[str, Trade] = {}
        self._signals: Dict[str, Signal] = {}
        self._configs: Dict[str, Dict[str, Any]] = {}
        self.write_count = 0

    def upsert_trade(self, trade: Trade) -> Trade:
        with self._lock:
            if trade.exchange_order_id:
                for other in self._trades.values():
                    if other.exchange_order_id == trade.exchange_order_id and other.id != trade.id:
                        raise RepositoryError(
                            f"Duplicate exchange_order_id {trade.exchange_order_id}",
                            context={"trade_id": trade.id, "existing_id": other.id},
                        )
            self._trades[trade.id] = replace(trade)
            self.write_count += 1
            return replace(trade)

    def get_trade(self, trade_id: str) -> Optional[Trade]:
        with self._lock:
            trade = self._trades.get(trade_id)
            return replace(trade) if trade else None

    def find_by_order_id(self, exchange_order_id: str) -> Optional[Trade]:
        with self._lock:
            for trade in self._trades.values():
                if trade.exchange_order_id == exchange_order_id:
                    return replace(trade)
            return None

    def query_trades(self, trade_filter: Optional[TradeFilter] = None) -> List[Trade]:
        trade_filter = trade_filter or TradeFilter()
        with self._lock:
            matches = [replace(t) for t in self._trades.values() if trade_filter.matches(t)]
        return sorted(matches, key=lambda t: t.created_at)

    def insert_signal(self, signal: Signal) -> Signal:
        with self._lock:
            self._signals[signal.id] = replace(signal)
            self.write_count += 1
            return replace(signal)

    def list_signals(self, symbol: Optional[str] = None, processed: Optional[bool] = None) -> List[Signal]:
        with self._lock:
            signals = [
                replace(s) for s in self._signals.values()
                if (symbol is None or s.symbol == symbol)
                and (processed is None or s.processed == processed)
            ]
        return sorted(signals, key=lambda s: s.created_at)

    def mark_signal_processed(self, signal_id: str) -> None:
        with self._lock:
            signal = self._signals.get(signal_id)
            if signal is None:
                raise RepositoryError(f"Unknown signal {signal_id}")
            self._signals[signal_id] = replace(signal, processed=True)
            self.write_count += 1

    def read_config(self, user_id: str) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._configs.get(user_id, {}))

    def save_config(self, user_id: str, settings: Dict[str, Any]) -> None:
        with self._lock:
            self._configs[user_id] = _json_safe(settings)
            self.write_count += 1


# ============================================================
# SQLALCHEMY REPOSITORY
# ============================================================

def create_repository_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create an engine for the repository.

    In-memory sqlite shares one connection across sessions.
    """
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, echo=echo, pool_pre_ping=True)


class SqlAlchemyTradeRepository(TradeRepository):
    """SQLAlchemy-backed store with one session per operation."""

    def __init__(self, engine: Engine, create_tables: bool = True):
        self._engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        if create_tables:
            Base.metadata.create_all(engine)

    @classmethod
    def from_url(cls, database_url: str) -> "SqlAlchemyTradeRepository":
        return cls(create_repository_engine(database_url))

    @contextmanager
    def _session(self) -> Generator[Session, None, None]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Repository operation failed: {e}")
            raise RepositoryError(f"Database operation failed: {e}", cause=e)
        finally:
            session.close()

    # --------------------------------------------------------
    # CONVERSION
    # --------------------------------------------------------

    @staticmethod
    def _to_trade(model: TradeModel) -> Trade:
        return Trade(
            id=model.id,
            symbol=model.symbol,
            side=TradeSide(model.side),
            order_type=OrderType(model.order_type),
            status=TradeStatus(model.status),
            quantity=model.quantity,
            submitted_price=model.submitted_price,
            fill_price=model.fill_price,
            profit_loss=model.profit_loss,
            exchange_order_id=model.exchange_order_id,
            closing_order_id=model.closing_order_id,
            created_at=ensure_utc(model.created_at),
            updated_at=ensure_utc(model.updated_at),
            notes=model.notes,
        )

    @staticmethod
    def _apply(model: TradeModel, trade: Trade) -> None:
        model.symbol = trade.symbol
        model.side = trade.side.value
        model.order_type = trade.order_type.value
        model.status = trade.status.value
        model.quantity = trade.quantity
        model.submitted_price = trade.submitted_price
        model.fill_price = trade.fill_price
        model.profit_loss = trade.profit_loss
        model.exchange_order_id = trade.exchange_order_id
        model.closing_order_id = trade.closing_order_id
        model.created_at = trade.created_at
        model.updated_at = trade.updated_at
        model.notes = trade.notes

    @staticmethod
    def _to_signal(model: SignalModel) -> Signal:
        return Signal(
            id=model.id,
            symbol=model.symbol,
            side=TradeSide(model.side),
            kind=SignalKind(model.kind),
            price=model.price,
            confidence=model.confidence,
            reasoning=model.reasoning,
            support_level=model.support_level,
            processed=model.processed,
            created_at=ensure_utc(model.created_at),
        )

    # --------------------------------------------------------
    # TRADES
    # --------------------------------------------------------

    def upsert_trade(self, trade: Trade) -> Trade:
        with self._session() as session:
            model = session.get(TradeModel, trade.id)
            if model is None:
                model = TradeModel(id=trade.id)
                session.add(model)
            self._apply(model, trade)
        logger.debug(f"Persist trades: upserted=1 | id={trade.id} | status={trade.status.value}")
        return trade

    def get_trade(self, trade_id: str) -> Optional[Trade]:
        with self._session() as session:
            model = session.get(TradeModel, trade_id)
            return self._to_trade(model) if model else None

    def find_by_order_id(self, exchange_order_id: str) -> Optional[Trade]:
        with self._session() as session:
            model = session.scalars(
                select(TradeModel).where(TradeModel.exchange_order_id == exchange_order_id)
            ).first()
            return self._to_trade(model) if model else None

    def query_trades(self, trade_filter: Optional[TradeFilter] = None) -> List[Trade]:
        trade_filter = trade_filter or TradeFilter()
        stmt = select(TradeModel)
        if trade_filter.symbol is not None:
            stmt = stmt.where(TradeModel.symbol == trade_filter.symbol)
        if trade_filter.side is not None:
            stmt = stmt.where(TradeModel.side == trade_filter.side.value)
        if trade_filter.statuses is not None:
            stmt = stmt.where(TradeModel.status.in_([s.value for s in trade_filter.statuses]))
        stmt = stmt.order_by(TradeModel.created_at)

        with self._session() as session:
            trades = [self._to_trade(m) for m in session.scalars(stmt)]

        # Date bounds compared in Python so naive sqlite datetimes stay correct
        return [
            t for t in trades
            if (trade_filter.created_after is None or t.created_at >= trade_filter.created_after)
            and (trade_filter.created_before is None or t.created_at <= trade_filter.created_before)
        ]

    # --------------------------------------------------------
    # SIGNALS
    # --------------------------------------------------------

    def insert_signal(self, signal: Signal) -> Signal:
        with self._session() as session:
            session.add(SignalModel(
                id=signal.id,
                symbol=signal.symbol,
                side=signal.side.value,
                kind=signal.kind.value,
                price=signal.price,
                confidence=signal.confidence,
                reasoning=signal.reasoning,
                support_level=signal.support_level,
                processed=signal.processed,
                created_at=signal.created_at,
            ))
        logger.debug(f"Persist trading_signals: inserted=1 | id={signal.id}")
        return signal

    def list_signals(self, symbol: Optional[str] = None, processed: Optional[bool] = None) -> List[Signal]:
        stmt = select(SignalModel).order_by(SignalModel.created_at)
        if symbol is not None:
            stmt = stmt.where(SignalModel.symbol == symbol)
        if processed is not None:
            stmt = stmt.where(SignalModel.processed == processed)
        with self._session() as session:
            return [self._to_signal(m) for m in session.scalars(stmt)]

    def mark_signal_processed(self, signal_id: str) -> None:
        with self._session() as session:
            model = session.get(SignalModel, signal_id)
            if model is None:
                raise RepositoryError(f"Unknown signal {signal_id}")
            model.processed = True

    # --------------------------------------------------------
    # USER CONFIGURATION
    # --------------------------------------------------------

    def read_config(self, user_id: str) -> Dict[str, Any]:
        with self._session() as session:
            model = session.get(UserConfigModel, user_id)
            return dict(model.settings or {}) if model else {}

    def save_config(self, user_id: str, settings: Dict[str, Any]) -> None:
        with self._session() as session:
            model = session.get(UserConfigModel, user_id)
            if model is None:
                model = UserConfigModel(user_id=user_id)
                session.add(model)
            model.settings = _json_safe(settings)
            model.updated_at = datetime.now(timezone.utc)
        logger.debug(f"Persist user_configs: upserted=1 | user_id={user_id}")
