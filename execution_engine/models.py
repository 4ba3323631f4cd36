"""
Execution Engine - ORM Models.

============================================================
PURPOSE
============================================================
SQLAlchemy ORM models for trade persistence.

TABLES:
- trades: Local trade records
- trading_signals: Generated entry signals
- user_configs: Stored per-user trading configuration

============================================================
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import (
    String,
    Numeric,
    Float,
    DateTime,
    Boolean,
    Text,
    Index,
    JSON,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ============================================================
# BASE
# ============================================================

class Base(DeclarativeBase):
    """Base class for ORM models."""
    pass


# ============================================================
# TRADE MODEL
# ============================================================

class TradeModel(Base):
    """Persisted trade record."""

    __tablename__ = "trades"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    symbol: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    side: Mapped[str] = mapped_column(String(8), nullable=False)
    order_type: Mapped[str] = mapped_column(String(16), nullable=False, default="limit")
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)

    quantity: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    submitted_price: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    fill_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8))
    profit_loss: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8))

    exchange_order_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, index=True)
    closing_order_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    notes: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("ix_trades_symbol_status", "symbol", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<TradeModel(id={self.id}, symbol={self.symbol}, side={self.side}, "
            f"status={self.status})>"
        )


# ============================================================
# SIGNAL MODEL
# ============================================================

class SignalModel(Base):
    """Persisted entry signal."""

    __tablename__ = "trading_signals"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    symbol: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    side: Mapped[str] = mapped_column(String(8), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    reasoning: Mapped[str] = mapped_column(Text, nullable=False, default="")
    support_level: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8))
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<SignalModel(id={self.id}, symbol={self.symbol}, processed={self.processed})>"


# ============================================================
# USER CONFIG MODEL
# ============================================================

class UserConfigModel(Base):
    """Stored trading configuration row for one user."""

    __tablename__ = "user_configs"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    settings: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<UserConfigModel(user_id={self.user_id}, keys={len(self.settings or {})})>"
