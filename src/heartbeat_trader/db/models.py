"""SQLAlchemy ORM models: traders, instruments, readers, positions, heartbeats."""

from datetime import datetime, timezone

from sqlalchemy import (
    ARRAY,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class TraderORM(Base):
    __tablename__ = "traders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(
        String(10),
        CheckConstraint("status IN ('enabled', 'disabled')"),
        default="enabled",
    )
    aggressiveness_level: Mapped[int] = mapped_column(Integer, default=5)
    trading_strategy: Mapped[str] = mapped_column(String(30), default="balanced")
    holding_period: Mapped[str] = mapped_column(String(30), default="swing")
    risk_preference_score: Mapped[int] = mapped_column(Integer, default=50)
    min_leverage: Mapped[float] = mapped_column(Numeric(5, 2, asdecimal=False), default=1)
    max_leverage: Mapped[float] = mapped_column(Numeric(5, 2, asdecimal=False), default=10)
    max_positions: Mapped[int] = mapped_column(Integer, default=3)
    max_position_size: Mapped[float] = mapped_column(Numeric(20, 8, asdecimal=False), nullable=False)
    min_trade_amount: Mapped[float] = mapped_column(Numeric(20, 8, asdecimal=False), nullable=False)
    allow_short: Mapped[bool] = mapped_column(Boolean, default=True)
    max_drawdown: Mapped[float] = mapped_column(Numeric(10, 4, asdecimal=False), default=20.0)
    stop_loss_threshold: Mapped[float] = mapped_column(Numeric(10, 4, asdecimal=False), default=10.0)
    position_stop_loss: Mapped[float] = mapped_column(Numeric(10, 4, asdecimal=False), default=5.0)
    position_take_profit: Mapped[float] = mapped_column(Numeric(10, 4, asdecimal=False), default=10.0)
    max_consecutive_losses: Mapped[int] = mapped_column(Integer, default=5)
    daily_max_loss: Mapped[float] = mapped_column(Numeric(20, 8, asdecimal=False), default=500.0)
    heartbeat_interval: Mapped[int] = mapped_column(Integer, default=300)
    active_time_start: Mapped[str] = mapped_column(String(5), default="00:00")
    active_time_end: Mapped[str] = mapped_column(String(5), default="24:00")
    preferred_instrument: Mapped[str | None] = mapped_column(String(30))
    timeframes: Mapped[list[str]] = mapped_column(ARRAY(String(10)), default=list)
    reader_ids: Mapped[list[int]] = mapped_column(ARRAY(Integer), default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint("min_leverage <= max_leverage", name="ck_traders_leverage_bounds"),
        CheckConstraint("min_leverage >= 1 AND max_leverage <= 125", name="ck_traders_leverage_range"),
        Index("idx_traders_status", "status"),
    )


class TradingPairORM(Base):
    __tablename__ = "trading_pairs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    symbol: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    base_currency: Mapped[str] = mapped_column(String(10), nullable=False)
    quote_currency: Mapped[str] = mapped_column(String(10), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class ReaderORM(Base):
    __tablename__ = "readers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    entrypoint: Mapped[str] = mapped_column(String(200), nullable=False)
    mandatory: Mapped[bool] = mapped_column(Boolean, default=False)
    timeout_ms: Mapped[int | None] = mapped_column(Integer)
    standard_parameters: Mapped[dict | None] = mapped_column(JSONB)
    parameter_defaults: Mapped[dict | None] = mapped_column(JSONB)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class PositionORM(Base):
    __tablename__ = "positions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    trader_id: Mapped[int] = mapped_column(ForeignKey("traders.id"), nullable=False)
    instrument: Mapped[str] = mapped_column(String(30), nullable=False)
    side: Mapped[str] = mapped_column(
        String(5),
        CheckConstraint("side IN ('long', 'short')"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(10),
        CheckConstraint("status IN ('open', 'closed', 'liquidated')"),
        default="open",
    )
    entry_price: Mapped[float] = mapped_column(Numeric(20, 8, asdecimal=False), nullable=False)
    current_price: Mapped[float] = mapped_column(Numeric(20, 8, asdecimal=False), nullable=False)
    leverage: Mapped[float] = mapped_column(Numeric(6, 2, asdecimal=False), nullable=False)
    quantity: Mapped[float] = mapped_column(Numeric(20, 8, asdecimal=False), nullable=False)
    position_size: Mapped[float] = mapped_column(Numeric(20, 8, asdecimal=False), nullable=False)
    margin: Mapped[float] = mapped_column(Numeric(20, 8, asdecimal=False), nullable=False)
    open_fee: Mapped[float] = mapped_column(Numeric(20, 8, asdecimal=False), default=0.0)
    close_fee: Mapped[float] = mapped_column(Numeric(20, 8, asdecimal=False), default=0.0)
    unrealized_pnl: Mapped[float] = mapped_column(Numeric(20, 8, asdecimal=False), default=0.0)
    realized_pnl: Mapped[float] = mapped_column(Numeric(20, 8, asdecimal=False), default=0.0)
    stop_loss: Mapped[float | None] = mapped_column(Numeric(20, 8, asdecimal=False))
    take_profit: Mapped[float | None] = mapped_column(Numeric(20, 8, asdecimal=False))
    liquidation_price: Mapped[float] = mapped_column(Numeric(20, 8, asdecimal=False), nullable=False)
    opened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("idx_positions_trader_status", "trader_id", "status"),
        Index("idx_positions_status", "status"),
    )


class PositionHistoryORM(Base):
    __tablename__ = "position_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    position_id: Mapped[int] = mapped_column(ForeignKey("positions.id"), nullable=False)
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    price: Mapped[float | None] = mapped_column(Numeric(20, 8, asdecimal=False))
    quantity: Mapped[float | None] = mapped_column(Numeric(20, 8, asdecimal=False))
    pnl: Mapped[float | None] = mapped_column(Numeric(20, 8, asdecimal=False))
    details: Mapped[dict | None] = mapped_column(JSONB)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("idx_position_history_position", "position_id", "created_at"),
    )


class HeartbeatORM(Base):
    __tablename__ = "heartbeat_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    trader_id: Mapped[int] = mapped_column(ForeignKey("traders.id"), nullable=False)
    status: Mapped[str] = mapped_column(
        String(30),
        CheckConstraint(
            "status IN ('triggered', 'in_progress', 'skipped_outside_hours', "
            "'skipped_no_intervals', 'skipped_no_readers', 'completed', 'failed')"
        ),
        nullable=False,
    )
    triggered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    duration_ms: Mapped[int | None] = mapped_column(Integer)
    was_within_active_hours: Mapped[bool | None] = mapped_column(Boolean)
    micro_decisions: Mapped[list | None] = mapped_column(JSONB)
    final_decision: Mapped[dict | None] = mapped_column(JSONB)
    execution_action: Mapped[str | None] = mapped_column(String(30))
    execution_result: Mapped[dict | None] = mapped_column(JSONB)
    readers_executed: Mapped[list | None] = mapped_column(JSONB)
    error_message: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        Index("idx_heartbeat_trader_triggered", "trader_id", triggered_at.desc()),
        Index("idx_heartbeat_triggered_at", triggered_at.desc()),
        # At most one running heartbeat per trader
        Index(
            "uq_heartbeat_in_progress",
            "trader_id",
            unique=True,
            postgresql_where=text("status = 'in_progress'"),
        ),
    )
