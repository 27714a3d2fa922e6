"""Initial schema: traders, trading_pairs, readers, positions, position_history,
heartbeat_history.

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import ARRAY, JSONB

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _money(name: str, nullable: bool = True, default: str | None = None) -> sa.Column:
    return sa.Column(name, sa.Numeric(20, 8), nullable=nullable, server_default=default)


def upgrade() -> None:
    # --- traders ---
    op.create_table(
        "traders",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column(
            "status",
            sa.String(10),
            sa.CheckConstraint("status IN ('enabled', 'disabled')"),
            server_default="enabled",
        ),
        sa.Column("aggressiveness_level", sa.Integer, server_default="5"),
        sa.Column("trading_strategy", sa.String(30), server_default="balanced"),
        sa.Column("holding_period", sa.String(30), server_default="swing"),
        sa.Column("risk_preference_score", sa.Integer, server_default="50"),
        sa.Column("min_leverage", sa.Numeric(5, 2), server_default="1"),
        sa.Column("max_leverage", sa.Numeric(5, 2), server_default="10"),
        sa.Column("max_positions", sa.Integer, server_default="3"),
        _money("max_position_size", nullable=False),
        _money("min_trade_amount", nullable=False),
        sa.Column("allow_short", sa.Boolean, server_default=sa.text("true")),
        sa.Column("max_drawdown", sa.Numeric(10, 4), server_default="20"),
        sa.Column("stop_loss_threshold", sa.Numeric(10, 4), server_default="10"),
        sa.Column("position_stop_loss", sa.Numeric(10, 4), server_default="5"),
        sa.Column("position_take_profit", sa.Numeric(10, 4), server_default="10"),
        sa.Column("max_consecutive_losses", sa.Integer, server_default="5"),
        _money("daily_max_loss", default="500"),
        sa.Column("heartbeat_interval", sa.Integer, server_default="300"),
        sa.Column("active_time_start", sa.String(5), server_default="00:00"),
        sa.Column("active_time_end", sa.String(5), server_default="24:00"),
        sa.Column("preferred_instrument", sa.String(30)),
        sa.Column("timeframes", ARRAY(sa.String(10)), server_default="{}"),
        sa.Column("reader_ids", ARRAY(sa.Integer), server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()")),
        sa.CheckConstraint("min_leverage <= max_leverage", name="ck_traders_leverage_bounds"),
        sa.CheckConstraint(
            "min_leverage >= 1 AND max_leverage <= 125", name="ck_traders_leverage_range"
        ),
    )
    op.create_index("idx_traders_status", "traders", ["status"])

    # --- trading_pairs ---
    op.create_table(
        "trading_pairs",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("symbol", sa.String(30), unique=True, nullable=False),
        sa.Column("base_currency", sa.String(10), nullable=False),
        sa.Column("quote_currency", sa.String(10), nullable=False),
        sa.Column("is_active", sa.Boolean, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()")),
    )

    # --- readers ---
    op.create_table(
        "readers",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(100), unique=True, nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("entrypoint", sa.String(200), nullable=False),
        sa.Column("mandatory", sa.Boolean, server_default=sa.text("false")),
        sa.Column("timeout_ms", sa.Integer),
        sa.Column("standard_parameters", JSONB),
        sa.Column("parameter_defaults", JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()")),
    )

    # --- positions ---
    op.create_table(
        "positions",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("trader_id", sa.Integer, sa.ForeignKey("traders.id"), nullable=False),
        sa.Column("instrument", sa.String(30), nullable=False),
        sa.Column(
            "side",
            sa.String(5),
            sa.CheckConstraint("side IN ('long', 'short')"),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.String(10),
            sa.CheckConstraint("status IN ('open', 'closed', 'liquidated')"),
            server_default="open",
        ),
        _money("entry_price", nullable=False),
        _money("current_price", nullable=False),
        sa.Column("leverage", sa.Numeric(6, 2), nullable=False),
        _money("quantity", nullable=False),
        _money("position_size", nullable=False),
        _money("margin", nullable=False),
        _money("open_fee", default="0"),
        _money("close_fee", default="0"),
        _money("unrealized_pnl", default="0"),
        _money("realized_pnl", default="0"),
        _money("stop_loss"),
        _money("take_profit"),
        _money("liquidation_price", nullable=False),
        sa.Column("opened_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("closed_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.Column("version", sa.Integer, nullable=False, server_default="0"),
    )
    op.create_index("idx_positions_trader_status", "positions", ["trader_id", "status"])
    op.create_index("idx_positions_status", "positions", ["status"])

    # --- position_history ---
    op.create_table(
        "position_history",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("position_id", sa.Integer, sa.ForeignKey("positions.id"), nullable=False),
        sa.Column("action", sa.String(30), nullable=False),
        _money("price"),
        _money("quantity"),
        _money("pnl"),
        sa.Column("details", JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()")),
    )
    op.create_index(
        "idx_position_history_position", "position_history", ["position_id", "created_at"]
    )

    # --- heartbeat_history ---
    op.create_table(
        "heartbeat_history",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("trader_id", sa.Integer, sa.ForeignKey("traders.id"), nullable=False),
        sa.Column(
            "status",
            sa.String(30),
            sa.CheckConstraint(
                "status IN ('triggered', 'in_progress', 'skipped_outside_hours', "
                "'skipped_no_intervals', 'skipped_no_readers', 'completed', 'failed')"
            ),
            nullable=False,
        ),
        sa.Column("triggered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("duration_ms", sa.Integer),
        sa.Column("was_within_active_hours", sa.Boolean),
        sa.Column("micro_decisions", JSONB),
        sa.Column("final_decision", JSONB),
        sa.Column("execution_action", sa.String(30)),
        sa.Column("execution_result", JSONB),
        sa.Column("readers_executed", JSONB),
        sa.Column("error_message", sa.Text),
    )
    op.create_index(
        "idx_heartbeat_trader_triggered",
        "heartbeat_history",
        ["trader_id", sa.text("triggered_at DESC")],
    )
    op.create_index(
        "idx_heartbeat_triggered_at", "heartbeat_history", [sa.text("triggered_at DESC")]
    )
    op.create_index(
        "uq_heartbeat_in_progress",
        "heartbeat_history",
        ["trader_id"],
        unique=True,
        postgresql_where=sa.text("status = 'in_progress'"),
    )


def downgrade() -> None:
    op.drop_table("heartbeat_history")
    op.drop_table("position_history")
    op.drop_table("positions")
    op.drop_table("readers")
    op.drop_table("trading_pairs")
    op.drop_table("traders")
